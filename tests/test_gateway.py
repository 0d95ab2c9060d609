import asyncio
import json

from rtc_probe.config import GatewayConfig
from rtc_probe.gateway import SignalingGateway

from fakes import FakeDataChannel, FakePeerConnection, FakeWebSocket

OFFER = {"type": "offer", "sdp": {"type": "offer", "sdp": "v=0\r\n"}}
CANDIDATE = {
    "candidate": "candidate:842163049 1 udp 1677729535 192.0.2.10 42166 typ srflx raddr 0.0.0.0 rport 0",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


def _gateway(**kwargs):
    pcs = []

    def factory():
        pc = FakePeerConnection(**kwargs)
        pcs.append(pc)
        return pc

    gateway = SignalingGateway(GatewayConfig(tick_interval=0), peer_factory=factory)
    return gateway, pcs


def _sent(websocket):
    return [json.loads(m) for m in websocket.sent]


def test_offer_is_answered_with_candidates():
    gateway, pcs = _gateway()
    websocket = FakeWebSocket()

    asyncio.run(gateway.handle_offer("peer1", websocket, OFFER))

    messages = _sent(websocket)
    assert [m["type"] for m in messages] == ["answer", "iceCandidate"]
    assert messages[0]["sdp"] == "v=0\r\n"
    assert messages[1]["candidate"] == []
    session = gateway.registry.get("peer1")
    assert session.pc is pcs[0]
    assert session.remote_description_set
    assert pcs[0].remoteDescription.type == "offer"


def test_superseding_offer_leaves_one_session():
    gateway, pcs = _gateway()
    websocket = FakeWebSocket()

    async def scenario():
        await gateway.handle_offer("peer1", websocket, OFFER)
        first = gateway.registry.get("peer1")
        channel = FakeDataChannel()
        pcs[0].emit("datachannel", channel)
        channel.emit("message", "SEND 1 10 1")
        channel.emit("message", "send start")

        await gateway.handle_offer("peer1", websocket, OFFER)
        return first, gateway.registry.get("peer1")

    first, second = asyncio.run(scenario())
    assert len(gateway.registry) == 1
    assert second is not first
    assert first.closed and pcs[0].closed
    assert first.timers_started == first.timers_released == 1
    assert not pcs[1].closed
    assert second.timers_started == 0


def test_no_timer_leak_over_many_cycles():
    gateway, pcs = _gateway()
    websocket = FakeWebSocket()
    sessions = []

    async def scenario():
        for _ in range(100):
            await gateway.handle_offer("peer1", websocket, OFFER)
            session = gateway.registry.get("peer1")
            channel = FakeDataChannel()
            session.pc.emit("datachannel", channel)
            channel.emit("message", "SEND 10 10 1")
            channel.emit("message", "send start")
            sessions.append(session)
            await gateway.teardown("peer1", "hangup")

    asyncio.run(scenario())
    assert len(gateway.registry) == 0
    assert all(pc.closed for pc in pcs)
    assert sum(s.timers_started for s in sessions) == 100
    assert sum(s.timers_released for s in sessions) == 100
    assert not any(s.has_active_timer for s in sessions)


def test_candidate_before_offer_is_dropped():
    gateway, pcs = _gateway()
    websocket = FakeWebSocket()
    raw = json.dumps({"type": "iceCandidate", "candidate": [CANDIDATE]})

    asyncio.run(gateway.handle_message("peer1", websocket, raw))

    assert websocket.sent == []
    assert pcs == []
    assert "peer1" not in gateway.registry


def test_candidates_after_offer_are_applied():
    gateway, pcs = _gateway()
    websocket = FakeWebSocket()

    async def scenario():
        await gateway.handle_offer("peer1", websocket, OFFER)
        await gateway.handle_message("peer1", websocket, json.dumps(
            {"type": "iceCandidate", "candidate": [CANDIDATE, {"candidate": ""}]}
        ))
        # a single candidate object is accepted too
        await gateway.handle_message("peer1", websocket, json.dumps(
            {"type": "iceCandidate", "candidate": CANDIDATE}
        ))

    asyncio.run(scenario())
    added = pcs[0].candidates
    assert len(added) == 3
    assert added[0].ip == "192.0.2.10"
    assert added[0].port == 42166
    assert added[0].type == "srflx"
    assert added[0].sdpMid == "0"
    assert added[1] is None


def test_malformed_candidate_does_not_break_the_batch():
    gateway, pcs = _gateway()
    websocket = FakeWebSocket()

    async def scenario():
        await gateway.handle_offer("peer1", websocket, OFFER)
        await gateway.handle_candidates("peer1", {"candidate": [{"candidate": "candidate:garbage"}, CANDIDATE]})

    asyncio.run(scenario())
    assert len(pcs[0].candidates) == 1
    assert "peer1" in gateway.registry


def test_negotiation_failure_reports_error():
    gateway, pcs = _gateway(fail_remote=True)
    websocket = FakeWebSocket()

    asyncio.run(gateway.handle_offer("peer1", websocket, OFFER))

    messages = _sent(websocket)
    assert [m["type"] for m in messages] == ["error"]
    assert "Negotiation failed" in messages[0]["data"]
    assert len(gateway.registry) == 0
    assert pcs[0].closed


def test_malformed_json_is_answered_with_error():
    gateway, pcs = _gateway()
    websocket = FakeWebSocket()

    async def scenario():
        await gateway.handle_message("peer1", websocket, "{not json")
        await gateway.handle_message("peer1", websocket, json.dumps({"type": "offer", "sdp": "oops"}))
        await gateway.handle_message("peer1", websocket, json.dumps({"type": "bogus"}))

    asyncio.run(scenario())
    assert [m["type"] for m in _sent(websocket)] == ["error", "error"]
    assert pcs == []


def test_hangup_tears_down():
    gateway, pcs = _gateway()
    websocket = FakeWebSocket()

    async def scenario():
        await gateway.handle_offer("peer1", websocket, OFFER)
        await gateway.handle_message("peer1", websocket, json.dumps({"type": "hangup"}))

    asyncio.run(scenario())
    assert len(gateway.registry) == 0
    assert pcs[0].closed


def test_handler_lifecycle():
    gateway, pcs = _gateway()
    websocket = FakeWebSocket([json.dumps(OFFER)])

    asyncio.run(gateway.handler(websocket))

    messages = _sent(websocket)
    assert [m["type"] for m in messages] == ["peerId", "answer", "iceCandidate"]
    peer_id = messages[0]["peerId"]
    assert len(peer_id) == 13
    # control connection gone: session and identity released
    assert len(gateway.registry) == 0
    assert pcs[0].closed
    assert peer_id not in gateway.registry._identities


def test_one_peer_failure_does_not_affect_another():
    gateway, pcs = _gateway()

    async def scenario():
        await gateway.handle_offer("peer1", FakeWebSocket(), OFFER)
        await gateway.handle_offer("peer2", FakeWebSocket(), OFFER)
        pcs[0].connectionState = "failed"
        pcs[0].emit("connectionstatechange")
        await asyncio.sleep(0)

    asyncio.run(scenario())
    assert "peer1" not in gateway.registry
    assert "peer2" in gateway.registry
    assert not pcs[1].closed


def test_close_all():
    gateway, pcs = _gateway()

    async def scenario():
        for peer_id in ("a", "b", "c"):
            await gateway.handle_offer(peer_id, FakeWebSocket(), OFFER)
        await gateway.close_all()

    asyncio.run(scenario())
    assert len(gateway.registry) == 0
    assert all(pc.closed for pc in pcs)
