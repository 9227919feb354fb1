"""Settings read from the environment (and an optional .env file)."""

import logging
import os
from typing import List, Optional

import dotenv
import pydantic

DEFAULT_LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_TRUE = ("1", "true", "yes", "on")


class Settings(pydantic.BaseModel):
    xray_bin: str = "bin/xray-linux-amd64"
    xray_config_path: str = "bin/config.json"
    xray_template_path: Optional[str] = None
    sub_remark_model: str = "-ieo"
    sub_show_info: bool = False
    blocked_domains: List[str] = []
    base_url: Optional[str] = None
    port: Optional[int] = None
    base_path: str = ""
    xui_username: Optional[str] = None
    xui_password: Optional[str] = None
    log_level: str = DEFAULT_LOG_LEVEL


def load_settings(env_path: str | None = None) -> Settings:
    """Load settings, letting real environment variables win over .env."""
    dotenv.load_dotenv(env_path or dotenv.find_dotenv(usecwd=True))
    domains = os.getenv("BLOCKED_DOMAINS", "")
    return Settings(
        xray_bin=os.getenv("XRAY_BIN", Settings.model_fields["xray_bin"].default),
        xray_config_path=os.getenv("XRAY_CONFIG_PATH", Settings.model_fields["xray_config_path"].default),
        xray_template_path=os.getenv("XRAY_TEMPLATE_PATH") or None,
        sub_remark_model=os.getenv("SUB_REMARK_MODEL") or "-ieo",
        sub_show_info=os.getenv("SUB_SHOW_INFO", "").lower().strip() in _TRUE,
        blocked_domains=[d.strip() for d in domains.split(",") if d.strip()],
        base_url=os.getenv("BASE_URL") or None,
        port=os.getenv("PORT") or None,
        base_path=os.getenv("BASE_PATH", ""),
        xui_username=os.getenv("XUI_USERNAME") or None,
        xui_password=os.getenv("XUI_PASSWORD") or None,
        log_level=get_log_level(),
    )


def get_log_level() -> str:
    """LOG_LEVEL if set, DEBUG when the DEBUG flag is on, INFO otherwise."""
    level = os.getenv("LOG_LEVEL", "").upper().strip()
    if level:
        return level
    if os.getenv("DEBUG", "").lower().strip() in _TRUE:
        return "DEBUG"
    return DEFAULT_LOG_LEVEL


def setup_logging(level: str = DEFAULT_LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
    )
