"""Subscription link generation.

One encoder per protocol turns an inbound, one of its clients and the
inbound's transport settings into share links:

- vmess://<base64 of a JSON object>
- vless://<uuid>@<host>:<port>?<params>#<remark>
- trojan://<password>@<host>:<port>?<params>#<remark>
- ss://<base64 of method:password>@<host>:<port>?<params>#<remark>

When the transport settings list external proxies, one link per proxy is
produced instead, pointing at the proxy's address.
"""

import json
import logging
from typing import Callable, Dict, List, Any
from urllib.parse import quote, urlencode

from xui_synth.models import Client, Inbound, Protocol, StreamSettings
from xui_synth.remark import RemarkFormatter
from xui_synth.util import RandomSource, base64_from_string, search_host, search_key

logger = logging.getLogger(__name__)

TLS_ONLY_PARAMS = ("alpn", "sni", "fp", "allowInsecure")

_USERINFO_SAFE = "$&+,;="
_FRAGMENT_SAFE = "$&+,/:;=?@!()*"
_VMESS_KEYS = {"headerType": "type", "seed": "path", "serviceName": "path"}


def network_params(stream: StreamSettings) -> Dict[str, str]:
    """Transport parameters of a stream in share-link query form."""
    params = {"type": stream.network}
    if stream.network == "tcp":
        header = stream.tcp_settings.header
        if header.type == "http":
            request = header.request
            if request is not None:
                params["path"] = request.path[0] if request.path else ""
                params["host"] = search_host(request.headers)
            params["headerType"] = "http"
    elif stream.network == "kcp":
        params["headerType"] = stream.kcp_settings.header.type
        params["seed"] = stream.kcp_settings.seed
    elif stream.network in ("ws", "httpupgrade", "xhttp"):
        settings = {
            "ws": stream.ws_settings,
            "httpupgrade": stream.httpupgrade_settings,
            "xhttp": stream.xhttp_settings,
        }[stream.network]
        params["path"] = settings.path
        params["host"] = settings.host or search_host(settings.headers)
        if stream.network == "xhttp":
            params["mode"] = settings.mode
    elif stream.network == "grpc":
        params["serviceName"] = stream.grpc_settings.service_name
        params["authority"] = stream.grpc_settings.authority
        if stream.grpc_settings.multi_mode:
            params["mode"] = "multi"
    return params


def vmess_network_fields(stream: StreamSettings) -> Dict[str, str]:
    """The same transport parameters under the keys vmess JSON uses."""
    fields = {"net": stream.network, "type": "none"}
    if stream.network == "tcp":
        fields["type"] = stream.tcp_settings.header.type
    for key, value in network_params(stream).items():
        if key == "type":
            continue
        if key == "mode" and stream.network == "grpc":
            fields["type"] = value
            continue
        fields[_VMESS_KEYS.get(key, key)] = value
    return fields


class LinkGenerator:
    """Builds share links for the clients of an inbound.

    Attributes:
        address: Host put into links that do not go through an external proxy.
        remarks: Formatter for the link labels.
        rand: Source of the random Reality parameters.
    """

    def __init__(self, address: str, remarks: RemarkFormatter,
                 rand: RandomSource | None = None) -> None:
        self.address = address
        self.remarks = remarks
        self.rand = rand or RandomSource()

    def security_params(self, stream: StreamSettings, client: Client) -> Dict[str, str]:
        """Resolve the security layer into query parameters."""
        params: Dict[str, str] = {}
        if stream.security == "tls":
            params["security"] = "tls"
            tls = stream.tls_settings or {}
            alpn = tls.get("alpn")
            if isinstance(alpn, list) and alpn:
                params["alpn"] = ",".join(str(a) for a in alpn)
            sni = search_key(tls, "serverName")
            if isinstance(sni, str):
                params["sni"] = sni
            inner = search_key(tls, "settings")
            fp = search_key(inner, "fingerprint")
            if isinstance(fp, str):
                params["fp"] = fp
            if search_key(inner, "allowInsecure") is True:
                params["allowInsecure"] = "1"
        elif stream.security == "reality":
            params["security"] = "reality"
            reality = stream.reality_settings
            if reality is not None:
                inner = search_key(reality, "settings")
                names = search_key(reality, "serverNames")
                if isinstance(names, list) and names:
                    params["sni"] = str(names[self.rand.num(len(names))])
                pbk = search_key(inner, "publicKey")
                if isinstance(pbk, str):
                    params["pbk"] = pbk
                short_ids = search_key(reality, "shortIds")
                if isinstance(short_ids, list) and short_ids:
                    params["sid"] = str(short_ids[self.rand.num(len(short_ids))])
                fp = search_key(inner, "fingerprint")
                if isinstance(fp, str) and fp:
                    params["fp"] = fp
                params["spx"] = "/" + self.rand.seq(15)
        else:
            params["security"] = "none"

        if stream.network == "tcp" and params["security"] in ("tls", "reality") and client.flow:
            params["flow"] = client.flow
        return params

    def _url(self, scheme: str, userinfo: str, host: str, port: int,
             params: Dict[str, str], remark: str) -> str:
        query = urlencode(sorted(params.items()))
        return f"{scheme}://{userinfo}@{host}:{port}?{query}#{quote(remark, safe=_FRAGMENT_SAFE)}"

    def _query_links(self, scheme: str, userinfo: str, inbound: Inbound,
                     client: Client, stream: StreamSettings) -> List[str]:
        params = network_params(stream)
        params.update(self.security_params(stream, client))

        if not stream.external_proxy:
            remark = self.remarks.format(inbound, client.email)
            return [self._url(scheme, userinfo, self.address, inbound.port, params, remark)]

        links = []
        for proxy in stream.external_proxy:
            proxy_params = dict(params)
            if proxy.force_tls != "same":
                proxy_params["security"] = proxy.force_tls
            if proxy.force_tls == "none":
                for key in TLS_ONLY_PARAMS:
                    proxy_params.pop(key, None)
            remark = self.remarks.format(inbound, client.email, proxy.remark)
            links.append(self._url(scheme, userinfo, proxy.dest, proxy.port, proxy_params, remark))
        return links

    def vmess(self, inbound: Inbound, client: Client,
              stream: StreamSettings | None = None) -> List[str]:
        if inbound.protocol != Protocol.VMESS:
            return []
        if stream is None:
            stream = inbound.get_stream_settings()

        obj: Dict[str, Any] = {
            "v": "2",
            "add": self.address,
            "port": inbound.port,
            "id": client.uuid,
            "scy": client.security,
        }
        obj.update(vmess_network_fields(stream))
        obj["tls"] = stream.security
        if stream.security == "tls":
            security = self.security_params(stream, client)
            for key in ("alpn", "sni", "fp"):
                if key in security:
                    obj[key] = security[key]
            insecure = search_key(search_key(stream.tls_settings, "settings"), "allowInsecure")
            if isinstance(insecure, bool):
                obj["allowInsecure"] = insecure

        if not stream.external_proxy:
            obj["ps"] = self.remarks.format(inbound, client.email)
            return [self._vmess_url(obj)]

        links = []
        for proxy in stream.external_proxy:
            proxy_obj = {k: v for k, v in obj.items()
                         if not (proxy.force_tls == "none" and k in TLS_ONLY_PARAMS)}
            proxy_obj["ps"] = self.remarks.format(inbound, client.email, proxy.remark)
            proxy_obj["add"] = proxy.dest
            proxy_obj["port"] = proxy.port
            if proxy.force_tls != "same":
                proxy_obj["tls"] = proxy.force_tls
            links.append(self._vmess_url(proxy_obj))
        return links

    @staticmethod
    def _vmess_url(obj: Dict[str, Any]) -> str:
        payload = json.dumps(obj, indent=2, ensure_ascii=False, sort_keys=True)
        return "vmess://" + base64_from_string(payload)

    def vless(self, inbound: Inbound, client: Client,
              stream: StreamSettings | None = None) -> List[str]:
        if inbound.protocol != Protocol.VLESS:
            return []
        if stream is None:
            stream = inbound.get_stream_settings()
        userinfo = quote(client.uuid, safe=_USERINFO_SAFE)
        return self._query_links("vless", userinfo, inbound, client, stream)

    def trojan(self, inbound: Inbound, client: Client,
               stream: StreamSettings | None = None) -> List[str]:
        if inbound.protocol != Protocol.TROJAN:
            return []
        if stream is None:
            stream = inbound.get_stream_settings()
        userinfo = quote(client.password, safe=_USERINFO_SAFE)
        return self._query_links("trojan", userinfo, inbound, client, stream)

    def shadowsocks(self, inbound: Inbound, client: Client,
                    stream: StreamSettings | None = None) -> List[str]:
        if inbound.protocol != Protocol.SHADOWSOCKS:
            return []
        if stream is None:
            stream = inbound.get_stream_settings()
        userinfo = quote(base64_from_string(shadowsocks_secret(inbound, client)), safe=_USERINFO_SAFE)
        return self._query_links("ss", userinfo, inbound, client, stream)

    def links(self, inbound: Inbound, client: Client,
              stream: StreamSettings | None = None) -> List[str]:
        """All links of one client, dispatched on the inbound's protocol."""
        try:
            protocol = Protocol(inbound.protocol)
        except ValueError:
            logger.debug("No link encoder for protocol %s", inbound.protocol)
            return []
        encoders: Dict[Protocol, Callable[..., List[str]]] = {
            Protocol.VMESS: self.vmess,
            Protocol.VLESS: self.vless,
            Protocol.TROJAN: self.trojan,
            Protocol.SHADOWSOCKS: self.shadowsocks,
        }
        return encoders[protocol](inbound, client, stream)

    def get_link(self, inbound: Inbound, client: Client,
                 stream: StreamSettings | None = None) -> str:
        return "\n".join(self.links(inbound, client, stream))


def shadowsocks_secret(inbound: Inbound, client: Client) -> str:
    """The ``method:password`` pair of a Shadowsocks link.

    2022 ciphers with several users need the server key as well, giving
    ``method:serverPassword:clientPassword``.
    """
    settings = inbound.get_settings()
    if settings.method.startswith("2"):
        return f"{settings.method}:{settings.password}:{client.password}"
    return f"{settings.method}:{client.password}"
