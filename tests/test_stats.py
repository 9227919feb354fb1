"""Tests for the stats API client and counter parsing."""
import grpc
import pytest

from xui_synth.stats import QueryStatsRequest, QueryStatsResponse, XrayAPI, parse_stats


class TestParseStats:

    def test_groups_counters(self):
        traffic, clients = parse_stats({
            "inbound>>>inbound-443>>>traffic>>>uplink": 10,
            "inbound>>>inbound-443>>>traffic>>>downlink": 20,
            "outbound>>>direct>>>traffic>>>downlink": 5,
            "inbound>>>api>>>traffic>>>uplink": 99,
            "user>>>alice>>>traffic>>>uplink": 1,
            "user>>>alice>>>traffic>>>downlink": 2,
        })
        by_tag = {t.tag: t for t in traffic}
        assert set(by_tag) == {"inbound-443", "direct"}
        assert (by_tag["inbound-443"].up, by_tag["inbound-443"].down) == (10, 20)
        assert by_tag["inbound-443"].isInbound and not by_tag["inbound-443"].isOutbound
        assert by_tag["direct"].isOutbound
        [alice] = clients
        assert (alice.email, alice.up, alice.down) == ("alice", 1, 2)

    def test_ignores_unknown_names(self):
        assert parse_stats({"garbage": 1, "user>>>a>>>online>>>count": 3}) == ([], [])


class TestMessages:

    def test_request_wire_format(self):
        request = QueryStatsRequest(pattern="user>>>", reset=True)
        parsed = QueryStatsRequest.FromString(request.SerializeToString())
        assert parsed.pattern == "user>>>"
        assert parsed.reset

    def test_response(self):
        response = QueryStatsResponse()
        response.stat.add(name="user>>>a>>>traffic>>>uplink", value=7)
        parsed = QueryStatsResponse.FromString(response.SerializeToString())
        assert [(s.name, s.value) for s in parsed.stat] == [("user>>>a>>>traffic>>>uplink", 7)]


class TestXrayAPI:

    @pytest.mark.asyncio
    async def test_requires_connect(self):
        with pytest.raises(RuntimeError):
            await XrayAPI(1).query_stats()

    @pytest.mark.asyncio
    async def test_against_local_server(self):
        requests = []

        async def query_stats(request, context):
            requests.append(request)
            response = QueryStatsResponse()
            response.stat.add(name="user>>>alice>>>traffic>>>downlink", value=42)
            response.stat.add(name="inbound>>>in-1>>>traffic>>>uplink", value=5)
            return response

        handler = grpc.method_handlers_generic_handler("xray.app.stats.command.StatsService", {
            "QueryStats": grpc.unary_unary_rpc_method_handler(
                query_stats,
                request_deserializer=QueryStatsRequest.FromString,
                response_serializer=QueryStatsResponse.SerializeToString,
            ),
        })
        server = grpc.aio.server()
        server.add_generic_rpc_handlers((handler,))
        port = server.add_insecure_port("127.0.0.1:0")
        await server.start()
        try:
            async with XrayAPI(port) as api:
                traffic, clients = await api.get_traffic(reset=True)
            assert api._channel is None
        finally:
            await server.stop(None)

        assert requests[0].reset
        assert [(t.tag, t.up) for t in traffic] == [("in-1", 5)]
        assert [(c.email, c.down) for c in clients] == [("alice", 42)]
