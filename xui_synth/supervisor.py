"""Supervision of the single engine process.

All restarts and stops go through one ``asyncio.Lock``; a restart that finds
the freshly built config equal to the running one leaves the process alone.
"""

import asyncio
import logging
import threading
from typing import Callable, List, Optional, Tuple

from xui_synth.engine import EngineConfig, EngineConfigBuilder
from xui_synth.models import ClientTraffic, Traffic
from xui_synth.process import ProcessHandle
from xui_synth.stats import XrayAPI
from xui_synth.util import ProcessStateError, UnavailableError

logger = logging.getLogger(__name__)

ProcessFactory = Callable[[EngineConfig], ProcessHandle]
APIFactory = Callable[[int], XrayAPI]


class XrayService:
    """Owns the running engine process.

    Attributes:
        builder: Produces the config each restart starts from.
        process_factory: Creates an unstarted process for a config.
        api_factory: Creates a stats client for the engine's API port.
    """

    def __init__(self, builder: EngineConfigBuilder, process_factory: ProcessFactory,
                 api_factory: APIFactory = XrayAPI) -> None:
        self.builder = builder
        self.process_factory = process_factory
        self.api_factory = api_factory
        self._process: Optional[ProcessHandle] = None
        self._lock = asyncio.Lock()
        self._result = ""
        self._need_restart = False
        self._flag_lock = threading.Lock()

    def is_running(self) -> bool:
        return self._process is not None and self._process.is_running()

    def get_err(self) -> Optional[Exception]:
        if self._process is None:
            return None
        return self._process.get_err()

    def get_version(self) -> str:
        if self._process is None:
            return "Unknown"
        return self._process.get_version()

    def get_result(self) -> str:
        """Output of the last run, read once the process has exited."""
        if self._result:
            return self._result
        if self._process is None or self.is_running():
            return ""
        self._result = self._process.get_result()
        return self._result

    async def restart(self, force: bool = False) -> None:
        """Start the engine with a freshly built config.

        Without ``force`` a running engine whose config is unchanged is left
        alone.

        Raises:
            MalformedConfigError: If the config cannot be built.
            OSError: If the new process cannot be started.
        """
        async with self._lock:
            logger.debug("restart xray, force: %s", force)
            config = await self.builder.build()

            if self.is_running():
                if not force and self._process.get_config() == config:
                    logger.debug("It does not need to restart xray")
                    return
                await self._process.stop()

            self._process = self.process_factory(config)
            self._result = ""
            await self._process.start()

    async def stop(self) -> None:
        """Stop the engine.

        Raises:
            ProcessStateError: If it is not running.
        """
        async with self._lock:
            logger.debug("Attempting to stop Xray...")
            if not self.is_running():
                raise ProcessStateError("xray is not running")
            await self._process.stop()
            self._result = self._process.get_result()
            self._process = None

    async def shutdown(self) -> None:
        """Stop the engine if it runs; used when the service exits."""
        async with self._lock:
            if self.is_running():
                await self._process.stop()
            self._process = None

    def set_to_need_restart(self) -> None:
        with self._flag_lock:
            self._need_restart = True

    def is_need_restart_and_set_false(self) -> bool:
        """Consume the need-restart flag; only one caller sees True."""
        with self._flag_lock:
            need, self._need_restart = self._need_restart, False
            return need

    async def restart_if_needed(self) -> bool:
        if not self.is_need_restart_and_set_false():
            return False
        await self.restart(False)
        return True

    async def get_traffic(self) -> Tuple[List[Traffic], List[ClientTraffic]]:
        """Traffic counted since the previous call.

        Raises:
            UnavailableError: If the engine is not running.
        """
        if not self.is_running():
            logger.debug("Attempted to fetch Xray traffic, but Xray is not running")
            raise UnavailableError("xray is not running")
        async with self.api_factory(self._process.get_api_port()) as api:
            try:
                return await api.get_traffic(reset=True)
            except Exception as e:
                logger.debug("Failed to fetch Xray traffic: %s", e)
                raise
