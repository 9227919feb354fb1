"""Tests for environment settings and the command line helpers."""
import logging

import pytest

from xui_synth.__main__ import make_client, make_store, reconcile
from xui_synth.config import Settings, get_log_level, load_settings
from xui_synth.engine import EngineConfigBuilder
from xui_synth.storage import MemoryStore
from xui_synth.supervisor import XrayService

ENV_VARS = ("XRAY_BIN", "XRAY_CONFIG_PATH", "XRAY_TEMPLATE_PATH", "SUB_REMARK_MODEL", "SUB_SHOW_INFO",
            "BLOCKED_DOMAINS", "BASE_URL", "PORT", "BASE_PATH", "XUI_USERNAME", "XUI_PASSWORD",
            "LOG_LEVEL", "DEBUG")


@pytest.fixture
def clean_env(monkeypatch):
    # setenv first so whatever load_dotenv writes is rolled back afterwards
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


class TestLoadSettings:

    def test_defaults(self, clean_env, tmp_path):
        env = tmp_path / ".env"
        env.write_text("")
        settings = load_settings(str(env))
        assert settings == Settings()
        assert settings.xray_bin == "bin/xray-linux-amd64"
        assert settings.sub_remark_model == "-ieo"

    def test_from_env_file(self, clean_env, tmp_path):
        env = tmp_path / ".env"
        env.write_text(
            "XRAY_BIN=/opt/xray\n"
            "BLOCKED_DOMAINS=bad.example, geosite:ads ,\n"
            "SUB_SHOW_INFO=true\n"
            "SUB_REMARK_MODEL=_oei\n"
            "BASE_URL=panel.example\n"
            "PORT=2053\n"
            "LOG_LEVEL=warning\n"
        )
        settings = load_settings(str(env))
        assert settings.xray_bin == "/opt/xray"
        assert settings.blocked_domains == ["bad.example", "geosite:ads"]
        assert settings.sub_show_info is True
        assert settings.sub_remark_model == "_oei"
        assert settings.port == 2053
        assert settings.log_level == "WARNING"

    def test_environment_wins(self, clean_env, tmp_path):
        env = tmp_path / ".env"
        env.write_text("XRAY_BIN=/from/file\n")
        clean_env.setenv("XRAY_BIN", "/from/env")
        assert load_settings(str(env)).xray_bin == "/from/env"


class TestLogLevel:

    def test_default(self, clean_env):
        assert get_log_level() == "INFO"

    def test_debug_flag(self, clean_env):
        clean_env.setenv("DEBUG", "yes")
        assert get_log_level() == "DEBUG"

    def test_explicit_level_wins(self, clean_env):
        clean_env.setenv("DEBUG", "1")
        clean_env.setenv("LOG_LEVEL", "error")
        assert get_log_level() == "ERROR"


class TestCommandLineHelpers:

    def test_client_needs_panel_address(self):
        with pytest.raises(SystemExit):
            make_client(Settings())

    def test_client_url(self):
        client = make_client(Settings(base_url="panel.example", port=2053, base_path="/secret"))
        assert client.base_url == "https://panel.example:2053/secret/"

    @pytest.mark.asyncio
    async def test_store_template_override(self, tmp_path):
        template = tmp_path / "template.json"
        template.write_text('{"inbounds": []}')
        settings = Settings(base_url="h", port=1, xray_template_path=str(template),
                            blocked_domains=["bad.example"])
        store = make_store(settings, make_client(settings))
        assert await store.get_config_template() == '{"inbounds": []}'
        assert await store.list_blocked_domains() == ["bad.example"]


class TestReconcile:

    @pytest.mark.asyncio
    async def test_restarts_stopped_engine(self, process_factory, launched):
        service = XrayService(EngineConfigBuilder(MemoryStore()), process_factory)
        await reconcile(service)
        assert service.is_running()
        assert len(launched) == 1

    @pytest.mark.asyncio
    async def test_failed_restart_is_logged(self, process_factory, launched, caplog):
        service = XrayService(EngineConfigBuilder(MemoryStore(template="{broken")), process_factory)
        with caplog.at_level(logging.ERROR, logger="xui_synth"):
            await reconcile(service)
        assert not service.is_running()
        assert launched == []
        assert "restart xray failed" in caplog.text
