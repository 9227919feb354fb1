"""
Shared pytest fixtures: inbound factories, a fixed clock and random source,
and a stub engine process.
"""
import json
from typing import Any, Dict, List

import pytest

from xui_synth.engine import EngineConfig
from xui_synth.models import ClientTraffic, Inbound
from xui_synth.storage import MemoryStore
from xui_synth.util import RandomSource

NOW = 1_700_000_000  # seconds


class FixedRandom(RandomSource):
    """Always picks the first element and pads with 'a'."""

    def num(self, n: int) -> int:
        return 0

    def seq(self, n: int) -> str:
        return "a" * n


def make_inbound(protocol: str = "vless", clients: List[Dict[str, Any]] | None = None,
                 stream: Dict[str, Any] | None = None, settings_extra: Dict[str, Any] | None = None,
                 stats: List[ClientTraffic] | None = None, **kwargs: Any) -> Inbound:
    """Build an inbound the way the panel stores it (JSON strings for blobs)."""
    settings = {"clients": clients or [], **(settings_extra or {})}
    return Inbound(
        protocol=protocol,
        settings=json.dumps(settings),
        streamSettings=json.dumps(stream if stream is not None else {"network": "tcp", "security": "none"}),
        clientStats=stats or [],
        **kwargs,
    )


class StubProcess:
    """Stand-in for XrayProcess that never spawns anything."""

    def __init__(self, config: EngineConfig, launched: list) -> None:
        self.config = config
        self.running = False
        self.stop_calls = 0
        self.output = "terminal output"
        self.start_error: Exception | None = None
        self._launched = launched

    async def start(self) -> None:
        self._launched.append(self)
        if self.start_error is not None:
            raise self.start_error
        self.running = True

    async def stop(self) -> None:
        self.stop_calls += 1
        self.running = False

    def is_running(self) -> bool:
        return self.running

    def get_err(self):
        return self.start_error

    def get_version(self) -> str:
        return "25.1.1"

    def get_result(self) -> str:
        return self.output

    def get_api_port(self) -> int:
        return self.config.api_port()

    def get_config(self) -> EngineConfig:
        return self.config


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def fixed_random() -> FixedRandom:
    return FixedRandom()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def launched() -> list:
    """Every StubProcess started by a test, in order."""
    return []


@pytest.fixture
def process_factory(launched):
    return lambda config: StubProcess(config, launched)
