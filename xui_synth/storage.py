"""Read-only access to stored inbounds, blocked domains and the engine template.

``Store`` is what the subscription and engine code need from the database.
``MemoryStore`` keeps everything in process and is what tests and embedders
use; ``xui_synth.panel.PanelStore`` reads from a running 3X-UI panel.
"""

import copy
import logging
from importlib import resources
from typing import List, Optional, Protocol as TypingProtocol

from xui_synth.models import Inbound, Protocol
from xui_synth.util import MalformedConfigError

logger = logging.getLogger(__name__)

SUBSCRIPTION_PROTOCOLS = tuple(p.value for p in Protocol)


def default_template() -> str:
    """The engine config template shipped with the package."""
    return resources.files("xui_synth").joinpath("config.json").read_text(encoding="utf-8")


class Store(TypingProtocol):
    async def find_inbounds_with_client_sub_id(self, sub_id: str) -> List[Inbound]:
        """Enabled vmess/vless/trojan/shadowsocks inbounds with a client in ``sub_id``."""
        ...

    async def find_inbound_by_fallback_dest(self, dest: str) -> Optional[Inbound]:
        """The inbound whose fallbacks point at ``dest``, if any."""
        ...

    async def list_blocked_domains(self) -> List[str]:
        ...

    async def list_enabled_inbounds(self) -> List[Inbound]:
        ...

    async def get_config_template(self) -> str:
        ...


def matches_sub_id(inbound: Inbound, sub_id: str) -> bool:
    if not inbound.enable or inbound.protocol not in SUBSCRIPTION_PROTOCOLS:
        return False
    try:
        clients = inbound.get_clients()
    except MalformedConfigError as e:
        logger.error("Skipping inbound %s: %s", inbound.id, e)
        return False
    return any(client.subscription_id == sub_id for client in clients)


def has_fallback_dest(inbound: Inbound, dest: str) -> bool:
    try:
        fallbacks = inbound.get_settings().fallbacks
    except MalformedConfigError:
        return False
    return any(str(fallback.dest) == dest for fallback in fallbacks)


class MemoryStore:
    """A ``Store`` over a plain list of inbounds.

    Records are handed out as deep copies so callers can never change what
    is stored.
    """

    def __init__(self, inbounds: List[Inbound] | None = None,
                 blocked_domains: List[str] | None = None,
                 template: str | None = None) -> None:
        self.inbounds: List[Inbound] = list(inbounds or [])
        self.blocked_domains: List[str] = list(blocked_domains or [])
        self.template = template

    async def find_inbounds_with_client_sub_id(self, sub_id: str) -> List[Inbound]:
        return [copy.deepcopy(i) for i in self.inbounds if matches_sub_id(i, sub_id)]

    async def find_inbound_by_fallback_dest(self, dest: str) -> Optional[Inbound]:
        for inbound in self.inbounds:
            if has_fallback_dest(inbound, dest):
                return copy.deepcopy(inbound)
        return None

    async def list_blocked_domains(self) -> List[str]:
        return list(self.blocked_domains)

    async def list_enabled_inbounds(self) -> List[Inbound]:
        return [copy.deepcopy(i) for i in self.inbounds if i.enable]

    async def get_config_template(self) -> str:
        if self.template is None:
            return default_template()
        return self.template
