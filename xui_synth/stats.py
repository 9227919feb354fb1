"""Xray Stats API client - reads traffic counters over gRPC.

Counter names look like:
- inbound>>>TAG>>>traffic>>>uplink
- outbound>>>TAG>>>traffic>>>downlink
- user>>>EMAIL>>>traffic>>>uplink

The request/response messages are declared at import time from a
descriptor so no generated ``_pb2`` modules are needed.
"""

import logging
from typing import Dict, List, Optional, Self, Tuple

import grpc
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

from xui_synth.models import ClientTraffic, Traffic

logger = logging.getLogger(__name__)

API_HOST = "127.0.0.1"
CALL_TIMEOUT = 10
_PACKAGE = "xray.app.stats.command"
_QUERY_STATS = f"/{_PACKAGE}.StatsService/QueryStats"


def _build_messages():
    F = descriptor_pb2.FieldDescriptorProto
    proto = descriptor_pb2.FileDescriptorProto(
        name="app/stats/command/command.proto", package=_PACKAGE, syntax="proto3")

    stat = proto.message_type.add(name="Stat")
    stat.field.add(name="name", number=1, type=F.TYPE_STRING, label=F.LABEL_OPTIONAL)
    stat.field.add(name="value", number=2, type=F.TYPE_INT64, label=F.LABEL_OPTIONAL)

    request = proto.message_type.add(name="QueryStatsRequest")
    request.field.add(name="pattern", number=1, type=F.TYPE_STRING, label=F.LABEL_OPTIONAL)
    request.field.add(name="reset", number=2, type=F.TYPE_BOOL, label=F.LABEL_OPTIONAL)
    request.field.add(name="patterns", number=3, type=F.TYPE_STRING, label=F.LABEL_REPEATED)
    request.field.add(name="regexp", number=4, type=F.TYPE_BOOL, label=F.LABEL_OPTIONAL)

    response = proto.message_type.add(name="QueryStatsResponse")
    response.field.add(name="stat", number=1, type=F.TYPE_MESSAGE, label=F.LABEL_REPEATED,
                       type_name=f".{_PACKAGE}.Stat")

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(proto.SerializeToString())
    return (
        message_factory.GetMessageClass(pool.FindMessageTypeByName(f"{_PACKAGE}.QueryStatsRequest")),
        message_factory.GetMessageClass(pool.FindMessageTypeByName(f"{_PACKAGE}.QueryStatsResponse")),
    )


QueryStatsRequest, QueryStatsResponse = _build_messages()


def parse_stats(stats: Dict[str, int]) -> Tuple[List[Traffic], List[ClientTraffic]]:
    """Group raw counters into per-tag and per-client traffic.

    Args:
        stats: ``{counter name: value}`` as returned by QueryStats.

    Returns:
        Inbound/outbound traffic (the "api" tag excluded) and client traffic.
    """
    tags: Dict[Tuple[str, str], Traffic] = {}
    clients: Dict[str, ClientTraffic] = {}
    for name, value in stats.items():
        parts = name.split(">>>")
        if len(parts) < 4 or parts[2] != "traffic":
            continue
        kind, key, direction = parts[0], parts[1], parts[3]
        if kind in ("inbound", "outbound"):
            if key == "api":
                continue
            item = tags.setdefault((kind, key), Traffic(
                isInbound=kind == "inbound", isOutbound=kind == "outbound", tag=key))
        elif kind == "user":
            item = clients.setdefault(key, ClientTraffic(email=key))
        else:
            continue
        if direction == "uplink":
            item.up = value
        elif direction == "downlink":
            item.down = value
    return list(tags.values()), list(clients.values())


class XrayAPI:
    """Client of the running engine's StatsService.

    Use as ``async with XrayAPI(port) as api:`` so the channel is always
    closed, even when a call fails.
    """

    def __init__(self, port: int, host: str = API_HOST) -> None:
        self.addr = f"{host}:{port}"
        self._channel: Optional[grpc.aio.Channel] = None

    def connect(self) -> None:
        self._channel = grpc.aio.insecure_channel(self.addr)

    async def close(self) -> None:
        if self._channel is not None:
            await self._channel.close()
            self._channel = None

    async def __aenter__(self) -> Self:
        self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def query_stats(self, pattern: str = "", reset: bool = False) -> Dict[str, int]:
        if self._channel is None:
            raise RuntimeError("Channel is not initialized")
        call = self._channel.unary_unary(
            _QUERY_STATS,
            request_serializer=QueryStatsRequest.SerializeToString,
            response_deserializer=QueryStatsResponse.FromString,
        )
        response = await call(QueryStatsRequest(pattern=pattern, reset=reset), timeout=CALL_TIMEOUT)
        return {stat.name: stat.value for stat in response.stat}

    async def get_traffic(self, reset: bool = True) -> Tuple[List[Traffic], List[ClientTraffic]]:
        """Traffic since the last reset, per tag and per client.

        Raises:
            grpc.aio.AioRpcError: If the engine does not answer.
        """
        return parse_stats(await self.query_stats(reset=reset))
