"""Engine configuration synthesis.

Builds the configuration the xray process runs with: the stored template,
a routing rule for blocked domains, and one inbound per enabled stored
inbound with its clients and transport settings reduced to what the engine
understands.
"""

import copy
import json
import logging
from typing import Any, Dict, List, Optional

import pydantic
from pydantic import Field

from xui_synth.models import Inbound
from xui_synth.storage import Store, default_template
from xui_synth.util import MalformedConfigError

logger = logging.getLogger(__name__)

ENGINE_CLIENT_KEYS = ("email", "id", "password", "flow", "method")
FLOW_ALIASES = {"xtls-rprx-vision-udp443": "xtls-rprx-vision"}
BLOCKED_OUTBOUND = "blocked"


def _blob(value: Any) -> Any:
    return None if value == "" else value


class InboundConfig(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(extra="allow")

    listen: Optional[str] = None
    port: int = 0
    protocol: str = ""
    settings: Optional[Any] = None
    stream_settings: Optional[Any] = Field(default=None, alias="streamSettings")
    tag: str = ""
    sniffing: Optional[Any] = None

    @classmethod
    def from_inbound(cls, inbound: Inbound) -> "InboundConfig":
        return cls(
            listen=inbound.listen or None,
            port=inbound.port,
            protocol=inbound.protocol,
            settings=_blob(inbound.settings),
            streamSettings=_blob(inbound.streamSettings),
            tag=inbound.tag,
            sniffing=_blob(inbound.sniffing),
        )


class EngineConfig(pydantic.BaseModel):
    """The configuration document xray is started with.

    Sections other than ``inbounds`` are carried through from the template
    untouched. Two configs are equal when their parsed contents are equal,
    regardless of formatting.
    """
    model_config = pydantic.ConfigDict(extra="allow", populate_by_name=True)

    log: Optional[Any] = None
    api: Optional[Any] = None
    dns: Optional[Any] = None
    fakedns: Optional[Any] = None
    inbounds: List[InboundConfig] = []
    outbounds: Optional[List[Any]] = None
    policy: Optional[Any] = None
    routing: Optional[Dict[str, Any]] = None
    stats: Optional[Any] = None
    reverse: Optional[Any] = None
    transport: Optional[Any] = None
    metrics: Optional[Any] = None
    observatory: Optional[Any] = None
    burst_observatory: Optional[Any] = Field(default=None, alias="burstObservatory")

    @classmethod
    def from_template(cls, template: str) -> "EngineConfig":
        try:
            return cls.model_validate_json(template)
        except pydantic.ValidationError as e:
            raise MalformedConfigError(f"engine config template is invalid: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    def api_port(self) -> int:
        """Port of the template inbound tagged "api", 0 if there is none."""
        for inbound in self.inbounds:
            if inbound.tag == "api":
                return inbound.port
        return 0


def add_blocked_domains(config: EngineConfig, domains: List[str]) -> None:
    """Append a rule routing ``domains`` to the blocked outbound."""
    if not domains:
        return
    routing = config.routing if config.routing is not None else {}
    rules = list(routing.get("rules") or [])
    rules.append({"type": "field", "outboundTag": BLOCKED_OUTBOUND, "domain": list(domains)})
    routing["rules"] = rules
    config.routing = routing


def engine_clients(clients: List[Dict[str, Any]], disabled_emails: set[str]) -> List[Dict[str, Any]]:
    """Clients the engine should serve, reduced to the keys it reads."""
    final_clients = []
    for client in clients:
        if client.get("email") in disabled_emails:
            logger.info("Remove Inbound User %s due to expiration or traffic limit", client.get("email"))
            continue
        if client.get("enable") is False:
            continue
        c = {key: value for key, value in client.items() if key in ENGINE_CLIENT_KEYS}
        if "flow" in c:
            c["flow"] = FLOW_ALIASES.get(c["flow"], c["flow"])
        final_clients.append(c)
    return final_clients


def engine_stream_settings(stream: Dict[str, Any]) -> Dict[str, Any]:
    """Transport settings without the keys only the panel and links use."""
    stream = copy.deepcopy(stream)
    for key in ("tlsSettings", "realitySettings"):
        security = stream.get(key)
        if isinstance(security, dict):
            security.pop("settings", None)
    stream.pop("externalProxy", None)
    return stream


def engine_inbound(inbound: Inbound) -> InboundConfig:
    """Derive the engine's view of a stored inbound without touching it."""
    if inbound.settings != "" and not isinstance(inbound.settings, dict):
        raise MalformedConfigError(f"inbound {inbound.id}: settings is not an object")
    if inbound.streamSettings != "" and not isinstance(inbound.streamSettings, dict):
        raise MalformedConfigError(f"inbound {inbound.id}: streamSettings is not an object")
    if inbound.sniffing != "" and not isinstance(inbound.sniffing, dict):
        raise MalformedConfigError(f"inbound {inbound.id}: sniffing is not an object")

    derived = inbound.model_copy(deep=True)
    settings = derived.settings
    if isinstance(settings, dict) and isinstance(settings.get("clients"), list):
        disabled = {stat.email for stat in inbound.clientStats or [] if not stat.enable}
        settings["clients"] = engine_clients(settings["clients"], disabled)
    if isinstance(derived.streamSettings, dict) and derived.streamSettings:
        derived.streamSettings = engine_stream_settings(derived.streamSettings)
    return InboundConfig.from_inbound(derived)


class EngineConfigBuilder:
    """Builds ``EngineConfig`` objects from what the store holds."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def build(self) -> EngineConfig:
        """Synthesize the engine config.

        Raises:
            MalformedConfigError: If the template or a stored inbound does not
                parse.
        """
        config = EngineConfig.from_template(await self.store.get_config_template())
        add_blocked_domains(config, await self.store.list_blocked_domains())

        for inbound in await self.store.list_enabled_inbounds():
            if not inbound.enable:
                continue
            config.inbounds.append(engine_inbound(inbound))
        return config

    async def get_xray_setting(self) -> Dict[str, Any]:
        """The template together with the tags of all enabled inbounds."""
        template = await self.store.get_config_template()
        EngineConfig.from_template(template)
        tags = [inbound.tag for inbound in await self.store.list_enabled_inbounds()]
        return {"xraySetting": json.loads(template), "inboundTags": tags}

    @staticmethod
    def check_template(template: str) -> EngineConfig:
        """Validate a template before it is saved."""
        return EngineConfig.from_template(template)

    @staticmethod
    def default_template() -> str:
        return default_template()
