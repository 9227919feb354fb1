"""Command line entry point.

Usage:
    python -m xui_synth sub <subId> --host example.com   # print links and header
    python -m xui_synth config                           # print the engine config
    python -m xui_synth run                              # run and supervise xray
"""

import argparse
import asyncio
import functools
import logging
import signal
import sys
from pathlib import Path

import httpx
import pydantic

from xui_synth.config import Settings, load_settings, setup_logging
from xui_synth.engine import EngineConfigBuilder
from xui_synth.panel import PanelClient, PanelStore
from xui_synth.process import XrayProcess
from xui_synth.subscription import SubService
from xui_synth.supervisor import XrayService
from xui_synth.util import MalformedConfigError, NotFoundError

logger = logging.getLogger("xui_synth")

RECONCILE_INTERVAL = 10


def make_client(settings: Settings) -> PanelClient:
    if not settings.base_url or not settings.port:
        raise SystemExit("BASE_URL and PORT must be set to reach the panel")
    return PanelClient(settings.base_url, settings.port, settings.base_path,
                       xui_username=settings.xui_username, xui_password=settings.xui_password)


def make_store(settings: Settings, client: PanelClient) -> PanelStore:
    template = None
    if settings.xray_template_path:
        template = Path(settings.xray_template_path).read_text(encoding="utf-8")
    return PanelStore(client, settings.blocked_domains, template)


async def print_subscription(settings: Settings, sub_id: str, host: str) -> int:
    async with make_client(settings) as client:
        service = SubService(make_store(settings, client), settings.sub_remark_model, settings.sub_show_info)
        try:
            links, header = await service.get_subs(sub_id, host)
        except NotFoundError as e:
            logger.error("%s", e)
            return 1
    print(header)
    print("\n".join(links))
    return 0


async def print_config(settings: Settings) -> int:
    async with make_client(settings) as client:
        config = await EngineConfigBuilder(make_store(settings, client)).build()
    print(config.to_json())
    return 0


async def reconcile(service: XrayService) -> None:
    """One supervision tick: restart xray if it died or a restart was requested."""
    if not service.is_running():
        logger.warning("xray is not running (%s), restarting", service.get_err())
        service.set_to_need_restart()
    try:
        await service.restart_if_needed()
    except (MalformedConfigError, pydantic.ValidationError, OSError, RuntimeError,
            httpx.HTTPError) as e:
        logger.error("restart xray failed: %s", e)


async def run(settings: Settings) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with make_client(settings) as client:
        factory = functools.partial(XrayProcess, binary=settings.xray_bin,
                                    config_path=settings.xray_config_path)
        service = XrayService(EngineConfigBuilder(make_store(settings, client)), factory)
        await service.restart(force=True)
        logger.info("xray %s running", service.get_version())
        try:
            while not stop.is_set():
                try:
                    await asyncio.wait_for(stop.wait(), RECONCILE_INTERVAL)
                except asyncio.TimeoutError:
                    pass
                if stop.is_set():
                    break
                await reconcile(service)
        finally:
            await service.shutdown()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="xui_synth")
    parser.add_argument("--env", help="path of a .env file")
    sub = parser.add_subparsers(dest="command", required=True)
    sub_cmd = sub.add_parser("sub", help="print the links of a subscription")
    sub_cmd.add_argument("sub_id")
    sub_cmd.add_argument("--host", required=True, help="address put into the links")
    sub.add_parser("config", help="print the synthesized engine config")
    sub.add_parser("run", help="start xray and keep it in sync")
    args = parser.parse_args(argv)

    settings = load_settings(args.env)
    setup_logging(settings.log_level)

    if args.command == "sub":
        return asyncio.run(print_subscription(settings, args.sub_id, args.host))
    if args.command == "config":
        return asyncio.run(print_config(settings))
    return asyncio.run(run(settings))


if __name__ == "__main__":
    sys.exit(main())
