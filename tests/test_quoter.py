"""Tests for the fixed-depth quoter client."""

import asyncio

from fakes import FakeHttpSession, RecordingHandler, wait_until

from depthbook_sdk import FixedDepthRequest, QuoterClient
from depthbook_sdk.websocket.quoter import format_stream_id

ETH_100 = FixedDepthRequest("ETH", "USDC", exponent=2, levels=10)


def quoter_ack(request: dict) -> dict:
    word = "subscribed" if request["action"] == "subscribe" else "unsubscribed"
    return {"id": request["id"], "result": word}


async def start_quoter(responder=quoter_ack):
    http = FakeHttpSession(responder)
    quoter = QuoterClient(ws_url="wss://test/quoter", repeat_cooldown=0.01, session_factory=lambda: http)
    task = asyncio.create_task(quoter.connect())
    assert await quoter.wait_connected(timeout=1)
    return quoter, http, task


def test_format_stream_id():
    assert format_stream_id(ETH_100) == "stream_ETH_USDC_ag_100_0_10"
    assert format_stream_id(FixedDepthRequest("ETH", "USDC", 0, 5, ecosystem=True)) == "stream_ETH_USDC_ag_1_1_5"
    assert format_stream_id(FixedDepthRequest("ETH", "USDC", -1, 5)) == "stream_ETH_USDC_ag_0_1_0_5"
    assert format_stream_id(FixedDepthRequest("ETH", "USDC", -3, 5)) == "stream_ETH_USDC_ag_0_001_0_5"


def test_subscribe_routes_pushes_by_stream_id():
    async def scenario():
        quoter, http, task = await start_quoter()
        eth, eth_fine = RecordingHandler(), RecordingHandler()
        fine = FixedDepthRequest("ETH", "USDC", exponent=1, levels=10)

        assert await quoter.subscribe_on_depth(eth, ETH_100) == "OK"
        assert await quoter.subscribe_on_depth(eth_fine, fine) == "OK"
        assert http.ws.sent[0] == {
            "action": "subscribe",
            "stream": "snap",
            "ticker": {"base": "ETH", "quote": "USDC", "exponent": 2, "levels": 10, "ecosystem": False},
            "id": 1,
        }

        http.ws.push({"stream": "stream_ETH_USDC_ag_100_0_10", "result": {"msg_id": 1}})
        http.ws.push({"stream": "stream_ETH_USDC_ag_10_0_10", "result": {"msg_id": 2}})
        await wait_until(lambda: eth_fine.messages)
        assert eth.messages == [{"msg_id": 1}]
        assert eth_fine.messages == [{"msg_id": 2}]

        assert await quoter.unsubscribe_from_depth(ETH_100) == "OK"
        assert http.ws.sent[-1]["action"] == "unsubscribe"
        assert format_stream_id(ETH_100) not in quoter.registry

        await quoter.close()
        await asyncio.wait_for(task, 1)
        assert eth_fine.disconnects == 1
        assert eth.disconnects == 0

    asyncio.run(scenario())


def test_other_results_pass_through():
    async def scenario():
        quoter, http, task = await start_quoter(lambda request: {"id": request["id"], "result": "OK"})
        assert await quoter.subscribe_on_depth(RecordingHandler(), ETH_100) == "OK"
        await quoter.close()
        await asyncio.wait_for(task, 1)

    asyncio.run(scenario())
