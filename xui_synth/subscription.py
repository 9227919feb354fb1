import logging
import time
from typing import Callable, List, Tuple

from xui_synth.links import LinkGenerator
from xui_synth.models import ClientTraffic, Inbound
from xui_synth.remark import RemarkFormatter
from xui_synth.storage import Store
from xui_synth.util import MalformedConfigError, NotFoundError, RandomSource

logger = logging.getLogger(__name__)

# transport keys a fallback child takes over from the inbound terminating TLS
MASTER_STREAM_KEYS = ("security", "tlsSettings", "realitySettings", "externalProxy")


def build_header(traffics: List[ClientTraffic]) -> str:
    """Summarize client traffic into a ``Subscription-Userinfo`` header value.

    Up and down are summed. The total is 0 (unlimited) as soon as one client
    is unlimited, and the expiry is 0 as soon as two clients disagree.

    Examples:
        >>> build_header([ClientTraffic(up=1, down=2, total=1000), ClientTraffic(up=3, total=0)])
        'upload=4; download=2; total=0; expire=0'
    """
    up = down = total = expiry = 0
    for index, traffic in enumerate(traffics):
        if index == 0:
            up, down, total = traffic.up, traffic.down, traffic.total
            if traffic.expiryTime > 0:
                expiry = traffic.expiryTime
            continue
        up += traffic.up
        down += traffic.down
        if total == 0 or traffic.total == 0:
            total = 0
        else:
            total += traffic.total
        if traffic.expiryTime != expiry:
            expiry = 0
    return f"upload={up}; download={down}; total={total}; expire={expiry // 1000}"


class SubService:
    """Serves the links of every client sharing a subscription id.

    Attributes:
        store: Where inbounds are read from.
        remark_model: Separator plus order of the remark parts, e.g. "-ieo".
        show_info: Whether remarks carry remaining traffic and time.
    """

    def __init__(self, store: Store, remark_model: str = "-ieo", show_info: bool = False,
                 *, rand: RandomSource | None = None,
                 clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.remark_model = remark_model
        self.show_info = show_info
        self.rand = rand or RandomSource()
        self.clock = clock

    async def get_subs(self, sub_id: str, host: str) -> Tuple[List[str], str]:
        """Links and traffic header for ``sub_id``.

        Args:
            sub_id: The subscription id shared by the clients.
            host: Address put into links that have no external proxy.

        Returns:
            The list of links and the header line.

        Raises:
            NotFoundError: If no enabled inbound has a client with ``sub_id``.
        """
        inbounds = await self.store.find_inbounds_with_client_sub_id(sub_id)
        if not inbounds:
            raise NotFoundError(f"No inbounds found with {sub_id}")

        remarks = RemarkFormatter(self.remark_model, self.show_info, clock=self.clock)
        generator = LinkGenerator(host, remarks, self.rand)
        result: List[str] = []
        traffics: List[ClientTraffic] = []
        for inbound in inbounds:
            try:
                clients = inbound.get_clients()
                inbound.get_stream_settings()
            except MalformedConfigError as e:
                logger.error("SubService - unable to read inbound %s: %s", inbound.id, e)
                continue
            if not clients:
                continue
            if inbound.listen.startswith("@"):
                inbound = await self.resolve_fallback_master(inbound)
            for client in clients:
                if client.enable and client.subscription_id == sub_id:
                    result.extend(generator.links(inbound, client))
                    traffics.append(inbound.get_client_traffic(client.email)
                                    or ClientTraffic(email=client.email))

        return result, build_header(traffics)

    async def resolve_fallback_master(self, inbound: Inbound) -> Inbound:
        """Put the listener an "@name" inbound is reached through into a copy of it.

        The copy gets the master's address and port, and its security and
        external proxy transport settings; everything else stays the child's.
        """
        master = await self.store.find_inbound_by_fallback_dest(inbound.listen)
        if master is None:
            logger.warning("No inbound falls back to %s, keeping its own settings", inbound.listen)
            return inbound

        stream = dict(inbound.streamSettings or {})
        master_stream = master.streamSettings or {}
        if not isinstance(master_stream, dict):
            logger.warning("Inbound %s falls back to %s but its stream settings are malformed, keeping its own",
                           master.id, inbound.listen)
            return inbound
        for key in MASTER_STREAM_KEYS:
            if key in master_stream:
                stream[key] = master_stream[key]
            else:
                stream.pop(key, None)
        return inbound.model_copy(
            update={"listen": master.listen, "port": master.port, "streamSettings": stream},
            deep=True,
        )
