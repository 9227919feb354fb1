import json
from enum import StrEnum
from typing import Union, Optional, TypeAlias, Any, Annotated, Literal, List, Dict

from pydantic import field_validator, Field, field_serializer

from xui_synth import base_model
from xui_synth.util import JsonType, MalformedConfigError

timestamp: TypeAlias = int
json_string: TypeAlias = str


class Protocol(StrEnum):
    """Inbound protocols that subscription links can be generated for."""
    VMESS = "vmess"
    VLESS = "vless"
    TROJAN = "trojan"
    SHADOWSOCKS = "shadowsocks"


class Client(base_model.LenientModel):
    """Represents a single client within an inbound's settings.

    Attributes:
        uuid: The client id for VMess/VLESS (aliased as 'id' in the panel).
        security: The VMess cipher the client asks for.
        password: Trojan/Shadowsocks password.
        flow: The VLESS flow type controlling connection behavior.
        email: Unique label of the client inside its inbound.
        limit_ip: Maximum number of simultaneous IP connections.
        limit_gb: Total data limit in bytes.
        expiry_time: Expiry as a millisecond UNIX timestamp (0 = no expiry).
        enable: Whether the client is enabled.
        tg_id: Associated Telegram ID for notifications.
        subscription_id: Subscription identifier grouping clients across inbounds.
        comment: Admin notes or comments for the client.
    """
    uuid: Annotated[str, Field(alias="id")] = ""
    security: str = ""
    password: str = ""
    flow: str = ""
    email: str = ""
    limit_ip: Annotated[int, Field(alias="limitIp")] = 0
    limit_gb: Annotated[int, Field(alias="totalGB")] = 0
    expiry_time: Annotated[timestamp, Field(alias="expiryTime")] = 0
    enable: bool = True
    tg_id: Annotated[Union[int, str], Field(alias="tgId")] = ""
    subscription_id: Annotated[str, Field(alias="subId")] = ""
    comment: str = ""


class ClientTraffic(base_model.BaseModel):
    """Traffic counters and limits of one client.

    ``enable`` turns False once the client ran out of traffic or time; it is
    independent of the client's own enable flag. A negative ``expiryTime``
    means "expire that many milliseconds after first use".
    """
    id: int = 0
    inboundId: int = 0
    enable: bool = True
    email: str = ""
    up: int = 0  # bytes
    down: int = 0  # bytes
    expiryTime: timestamp = 0  # ms UNIX timestamp
    total: int = 0  # bytes, 0 = unlimited
    reset: int = 0
    lastOnline: timestamp = 0


class Traffic(base_model.BaseModel):
    """Aggregate counters of one inbound or outbound tag."""
    isInbound: bool = False
    isOutbound: bool = False
    tag: str = ""
    up: int = 0
    down: int = 0


class Fallback(base_model.LenientModel):
    name: str = ""
    alpn: str = ""
    path: str = ""
    dest: Union[str, int] = ""
    xver: int = 0


class InboundSettings(base_model.LenientModel):
    """Protocol settings of an inbound (client list, shared secret, fallbacks)."""
    clients: List[Client] = []
    method: str = ""
    password: str = ""
    fallbacks: List[Fallback] = []


# Transport settings

class ExternalProxy(base_model.LenientModel):
    """An alternate public endpoint links are generated for."""
    force_tls: Annotated[str, Field(alias="forceTls")] = "same"
    dest: str = ""
    port: int = 0
    remark: str = ""


class HeaderRequest(base_model.LenientModel):
    path: List[str] = []
    headers: Dict[str, Any] = {}


class HeaderConfig(base_model.LenientModel):
    type: str = "none"
    request: Optional[HeaderRequest] = None


class TcpSettings(base_model.LenientModel):
    header: HeaderConfig = HeaderConfig()


class KcpSettings(base_model.LenientModel):
    header: HeaderConfig = HeaderConfig()
    seed: str = ""


class WsSettings(base_model.LenientModel):
    """Shared shape of ws, httpupgrade and xhttp settings."""
    path: str = ""
    host: str = ""
    headers: Dict[str, Any] = {}
    mode: str = ""


class GrpcSettings(base_model.LenientModel):
    service_name: Annotated[str, Field(alias="serviceName")] = ""
    authority: str = ""
    multi_mode: Annotated[bool, Field(alias="multiMode")] = False


class StreamSettings(base_model.LenientModel):
    """Transport settings of an inbound.

    TLS and Reality blocks stay raw mappings because the fields links need may
    sit in a nested "settings" object whose shape differs between panel
    versions; they are read with ``util.search_key``.
    """
    network: str = "tcp"
    security: str = "none"
    tls_settings: Annotated[Optional[Dict[str, Any]], Field(alias="tlsSettings")] = None
    reality_settings: Annotated[Optional[Dict[str, Any]], Field(alias="realitySettings")] = None
    external_proxy: Annotated[List[ExternalProxy], Field(alias="externalProxy")] = []
    tcp_settings: Annotated[TcpSettings, Field(alias="tcpSettings")] = TcpSettings()
    kcp_settings: Annotated[KcpSettings, Field(alias="kcpSettings")] = KcpSettings()
    ws_settings: Annotated[WsSettings, Field(alias="wsSettings")] = WsSettings()
    grpc_settings: Annotated[GrpcSettings, Field(alias="grpcSettings")] = GrpcSettings()
    httpupgrade_settings: Annotated[WsSettings, Field(alias="httpupgradeSettings")] = WsSettings()
    xhttp_settings: Annotated[WsSettings, Field(alias="xhttpSettings")] = WsSettings()


class Inbound(base_model.BaseModel):
    """Represents a proxy inbound as stored by the panel.

    An inbound defines how clients connect to the server, including the
    protocol, port, transport settings, and client list.

    Attributes:
        id: The unique identifier for this inbound.
        up: Total uploaded bytes through this inbound.
        down: Total downloaded bytes through this inbound.
        total: Total data limit in bytes.
        remark: Human-readable name of the inbound.
        enable: Whether the inbound is currently enabled.
        expiryTime: Inbound expiry time as ms UNIX timestamp.
        clientStats: Traffic records of the inbound's clients.
        listen: Listen address; "@name" means the inbound sits behind the
            fallback of another inbound.
        port: The port number the inbound listens on.
        protocol: The proxy protocol (vless, vmess, trojan, shadowsocks, ...).
        settings: Protocol settings (auto-parsed from string).
        streamSettings: Transport settings (auto-parsed from string).
        tag: Internal tag identifier for routing.
        sniffing: Sniffing configuration (auto-parsed from string).
    """
    id: int = 0
    up: int = 0  # bytes
    down: int = 0  # bytes
    total: int = 0  # bytes
    remark: str = ""
    enable: bool = True
    expiryTime: timestamp = 0
    clientStats: Union[List[ClientTraffic], None] = None
    listen: str = ""
    port: int = 0
    protocol: str = ""  # "vless", "vmess", "trojan", "shadowsocks", "dokodemo-door", ...
    settings: Union[json_string, Dict[str, Any]] = ""
    streamSettings: Union[json_string, Dict[str, Any]] = ""
    tag: str = ""
    sniffing: Union[json_string, Dict[str, Any]] = ""

    # noinspection PyNestedDecorators
    @field_validator('settings', 'streamSettings', 'sniffing', mode='after')
    @classmethod
    def parse_json_fields(cls, value: Union[str, Dict[str, Any]]) -> JsonType | Literal[""]:
        """Parse JSON string fields into dictionaries.

        The panel stores settings, streamSettings, and sniffing as JSON
        strings. This validator parses them into dicts.

        Args:
            value: The JSON string to parse, an already parsed dict, or "".

        Returns:
            Parsed dictionary, empty string if input was empty, or the raw
            text if it is not valid JSON. ``get_settings`` and
            ``get_stream_settings`` reject the raw text later.
        """
        if not isinstance(value, str):
            return value
        if value.strip() == "":
            return ""
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value

    # noinspection PyNestedDecorators
    @field_serializer("settings", "streamSettings", "sniffing")
    @classmethod
    def stringify_json_fields(cls, value: Dict | Literal[""]) -> str:
        """Serialize dictionary fields back to JSON strings."""
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False)

    def get_settings(self) -> InboundSettings:
        if self.settings == "":
            return InboundSettings()
        if not isinstance(self.settings, dict):
            raise MalformedConfigError(f"inbound {self.id}: settings is not an object")
        return InboundSettings.model_validate(self.settings)

    def get_clients(self) -> List[Client]:
        return self.get_settings().clients

    def get_stream_settings(self) -> StreamSettings:
        if self.streamSettings == "":
            return StreamSettings()
        if not isinstance(self.streamSettings, dict):
            raise MalformedConfigError(f"inbound {self.id}: streamSettings is not an object")
        return StreamSettings.model_validate(self.streamSettings)

    def get_client_traffic(self, email: str) -> ClientTraffic | None:
        for traffic in self.clientStats or []:
            if traffic.email == email:
                return traffic
        return None
