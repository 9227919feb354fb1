"""A ``Store`` backed by a running 3X-UI panel.

``PanelClient`` logs into the panel and wraps its HTTP API; ``PanelStore``
answers the store queries from the panel's inbound list.
"""

import asyncio
import datetime
import json
import logging
from typing import Any, Dict, List, Optional, Self

import httpx
import pydantic
from httpx import AsyncClient, Response

from xui_synth.models import Inbound
from xui_synth.storage import default_template, has_fallback_dest, matches_sub_id
from xui_synth.util import DBLockedError, JsonType, MalformedConfigError, check_xui_response_validity

logger = logging.getLogger(__name__)


class PanelClient:
    """Session with the panel's web API.

    Attributes:
        base_url: https://host:port/base_path of the panel.
        session_duration: Seconds after which a 404 triggers a new login.
        max_retries: Attempts while the panel reports a locked database.
    """

    def __init__(self, base_host: str, base_port: int, base_path: str,
                 *, xui_username: str | None = None, xui_password: str | None = None,
                 two_fac_code: str | None = None, session_duration: int = 3600,
                 transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.session: AsyncClient | None = None
        path = base_path.strip("/")
        self.base_url: str = f"https://{base_host}:{base_port}/{path + '/' if path else ''}"
        self.session_start: float | None = None
        self.session_duration: int = session_duration
        self.xui_username: str | None = xui_username
        self.xui_password: str | None = xui_password
        self.two_fac_code: str | None = two_fac_code
        self.transport = transport
        self.max_retries: int = 5
        self.retry_delay: float = 1

    async def _request(self, method: str, url: str, **kwargs: Any) -> Response:
        if self.session is None:
            raise RuntimeError("Session is not initialized")

        for attempt in range(self.max_retries):
            resp = await self.session.request(method, url, **kwargs)
            if resp.status_code != 200:
                if resp.status_code == 404:
                    now = datetime.datetime.now().timestamp()
                    if self.session_start is None or now - self.session_start > self.session_duration:
                        await self.login()
                        continue
                raise RuntimeError(f"Server returned status code {resp.status_code}")

            status = check_xui_response_validity(resp)
            if status == "OK":
                return resp
            if status == "DB_LOCKED":
                await asyncio.sleep(self.retry_delay)
                continue
            raise RuntimeError(f"Unexpected response validity status: {status}")
        raise DBLockedError("Database locked: max retries exceeded")

    async def safe_get(self, url: str, **kwargs: Any) -> Response:
        return await self._request("GET", url, **kwargs)

    async def safe_post(self, url: str, **kwargs: Any) -> Response:
        return await self._request("POST", url, **kwargs)

    async def login(self) -> None:
        if self.session is None:
            raise RuntimeError("Session is not initialized")
        payload = {
            "username": self.xui_username,
            "password": self.xui_password,
        }
        if self.two_fac_code is not None:
            payload["twoFactorCode"] = self.two_fac_code

        resp = await self.session.post("login", data=payload)
        if resp.status_code != 200:
            raise RuntimeError(f"Error: server returned a status code of {resp.status_code}")
        if not resp.json().get("success"):
            raise ValueError("Error: wrong credentials or failed login")
        self.session_start = datetime.datetime.now().timestamp()

    async def get_obj(self, method: str, url: str) -> JsonType:
        resp = await self._request(method, url)
        return resp.json()["obj"]

    def connect(self) -> None:
        self.session = AsyncClient(base_url=self.base_url, transport=self.transport)

    async def disconnect(self) -> None:
        if self.session is not None:
            await self.session.aclose()
            self.session = None

    async def __aenter__(self) -> Self:
        self.connect()
        await self.login()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()


class PanelStore:
    """Store queries answered from the panel's inbound list.

    Endpoints:
        - /panel/api/inbounds/list
        - /panel/xray/  (engine config template)
    """
    _inbounds_url = "panel/api/inbounds/list"
    _xray_setting_url = "panel/xray/"

    def __init__(self, client: PanelClient, blocked_domains: List[str] | None = None,
                 template: str | None = None) -> None:
        self.client = client
        self.blocked_domains = list(blocked_domains or [])
        self.template = template

    async def get_all(self, skip_invalid: bool = True) -> List[Inbound]:
        """All inbounds the panel lists, validated one record at a time.

        Args:
            skip_invalid: Log and leave out records that do not validate
                instead of raising.

        Raises:
            MalformedConfigError: If a record does not validate and
                ``skip_invalid`` is False.
        """
        obj = await self.client.get_obj("GET", self._inbounds_url)
        inbounds = []
        for record in obj or []:
            try:
                inbounds.append(Inbound.model_validate(record))
            except pydantic.ValidationError as e:
                inbound_id = record.get("id") if isinstance(record, dict) else None
                if not skip_invalid:
                    raise MalformedConfigError(f"inbound {inbound_id}: {e}") from e
                logger.error("Skipping inbound %s: %s", inbound_id, e)
        return inbounds

    async def find_inbounds_with_client_sub_id(self, sub_id: str) -> List[Inbound]:
        return [inbound for inbound in await self.get_all() if matches_sub_id(inbound, sub_id)]

    async def find_inbound_by_fallback_dest(self, dest: str) -> Optional[Inbound]:
        for inbound in await self.get_all():
            if has_fallback_dest(inbound, dest):
                return inbound
        return None

    async def list_blocked_domains(self) -> List[str]:
        return list(self.blocked_domains)

    async def list_enabled_inbounds(self) -> List[Inbound]:
        return [inbound for inbound in await self.get_all(skip_invalid=False) if inbound.enable]

    async def get_config_template(self) -> str:
        if self.template is not None:
            return self.template
        obj = await self.client.get_obj("POST", self._xray_setting_url)
        if not obj:
            return default_template()
        # the panel sends {"xraySetting": {...}, "inboundTags": [...]} as a string
        setting: Dict[str, Any] = json.loads(obj) if isinstance(obj, str) else obj
        return json.dumps(setting["xraySetting"], ensure_ascii=False)
