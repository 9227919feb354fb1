"""Tests for parsing stored inbound records."""
import pytest

from conftest import make_inbound
from xui_synth.models import Client, Inbound, InboundSettings, StreamSettings
from xui_synth.util import MalformedConfigError


class TestStreamSettings:
    """Partly filled or oddly typed transport blobs fall back to defaults."""

    def test_nested_nulls(self):
        stream = StreamSettings.model_validate({
            "network": "grpc",
            "security": None,
            "grpcSettings": {"serviceName": "svc", "authority": None, "multiMode": None},
            "wsSettings": {"path": "/ws", "headers": None},
            "tcpSettings": {"header": {"type": "http", "request": {"path": None, "headers": None}}},
        })
        assert stream.security == "none"
        assert stream.grpc_settings.service_name == "svc"
        assert stream.grpc_settings.authority == ""
        assert stream.grpc_settings.multi_mode is False
        assert stream.ws_settings.headers == {}
        assert stream.tcp_settings.header.request.path == []

    def test_numbers_where_text_is_expected(self):
        stream = StreamSettings.model_validate({"network": "kcp", "kcpSettings": {"seed": 123}})
        assert stream.kcp_settings.seed == "123"

    def test_wrong_shapes(self):
        stream = StreamSettings.model_validate({
            "network": "ws",
            "wsSettings": "oops",
            "tlsSettings": ["not", "a", "map"],
            "externalProxy": {"dest": "a.example"},
            "kcpSettings": {"header": 5, "seed": {"x": 1}},
        })
        assert stream.ws_settings.path == ""
        assert stream.tls_settings is None
        assert stream.external_proxy == []
        assert stream.kcp_settings.header.type == "none"
        assert stream.kcp_settings.seed == ""

    def test_unknown_keys_kept(self):
        stream = StreamSettings.model_validate({"network": "tcp", "sockopt": {"mark": 1}})
        assert stream.model_extra == {"sockopt": {"mark": 1}}

    def test_bad_proxy_port(self):
        stream = StreamSettings.model_validate({
            "externalProxy": [{"forceTls": "same", "dest": "a.example", "port": "not a port"}],
        })
        assert stream.external_proxy[0].dest == "a.example"
        assert stream.external_proxy[0].port == 0


class TestClients:

    def test_null_fields(self):
        settings = InboundSettings.model_validate({
            "clients": [{"id": "u", "email": None, "flow": None, "enable": None, "subId": "s1"}],
            "method": None,
        })
        client = settings.clients[0]
        assert (client.uuid, client.email, client.flow) == ("u", "", "")
        assert client.enable is True
        assert client.subscription_id == "s1"
        assert settings.method == ""

    def test_construct_by_field_name(self):
        client = Client(uuid="u", subscription_id="s1")
        assert client.uuid == "u"
        assert client.subscription_id == "s1"


class TestInboundColumns:

    def test_invalid_json_is_kept_as_text(self):
        inbound = Inbound(id=3, protocol="vless", settings="{broken", streamSettings="{also broken")
        assert inbound.settings == "{broken"
        with pytest.raises(MalformedConfigError):
            inbound.get_settings()
        with pytest.raises(MalformedConfigError):
            inbound.get_stream_settings()

    def test_invalid_json_round_trips(self):
        inbound = Inbound(id=3, settings="{broken", streamSettings='{"network": "ws"}')
        dumped = inbound.model_dump()
        assert dumped["settings"] == "{broken"
        assert dumped["streamSettings"] == '{"network": "ws"}'

    def test_empty_columns(self):
        inbound = make_inbound("vless", stream={})
        inbound.streamSettings = ""
        assert inbound.get_stream_settings().network == "tcp"
        assert Inbound(settings="  ").get_clients() == []
