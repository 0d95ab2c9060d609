from types import SimpleNamespace

import pytest
from aiortc import RTCIceCandidate, RTCSessionDescription

from rtc_probe.errors import SignalingError
from rtc_probe.signaling import (
    candidate_from_json,
    candidate_to_json,
    candidates_message,
    decode_message,
    description_from_json,
    description_to_json,
    encode_message,
    error_message,
    local_candidates,
    media_line_indexes,
    peer_id_message,
)


def test_decode_message():
    assert decode_message('{"type": "hangup"}') == {"type": "hangup"}
    assert decode_message(b'{"type": "hangup"}') == {"type": "hangup"}


@pytest.mark.parametrize("raw", ["{oops", "[1, 2]", '{"sdp": "x"}', "null"])
def test_decode_message_rejects(raw):
    with pytest.raises(SignalingError):
        decode_message(raw)


def test_encode_message():
    assert decode_message(encode_message(peer_id_message("p1"))) == {"type": "peerId", "peerId": "p1"}
    assert error_message("bad") == {"type": "error", "data": "bad"}


def test_description():
    description = RTCSessionDescription(sdp="v=0\r\n", type="offer")
    assert description_to_json(description) == {"type": "offer", "sdp": "v=0\r\n"}
    assert description_from_json({"type": "answer", "sdp": "v=0\r\n"}).type == "answer"
    with pytest.raises(SignalingError):
        description_from_json("v=0")


def test_candidate_json():
    candidate = RTCIceCandidate(
        component=1,
        foundation="1",
        ip="192.0.2.1",
        port=5000,
        priority=2130706431,
        protocol="udp",
        type="host",
        sdpMid="0",
        sdpMLineIndex=0,
    )
    data = candidate_to_json(candidate)
    assert data["candidate"].startswith("candidate:1 1 udp 2130706431 192.0.2.1 5000 typ host")
    assert data["sdpMid"] == "0"
    assert data["sdpMLineIndex"] == 0

    parsed = candidate_from_json(data)
    assert (parsed.ip, parsed.port, parsed.type, parsed.sdpMid) == ("192.0.2.1", 5000, "host", "0")

    message = candidates_message([candidate])
    assert message["type"] == "iceCandidate"
    assert message["candidate"] == [data]


def test_empty_candidate_means_end_of_candidates():
    assert candidate_from_json({"candidate": ""}) is None
    assert candidate_from_json({}) is None


def test_malformed_candidate():
    with pytest.raises(SignalingError):
        candidate_from_json({"candidate": "candidate:1 1 udp"})


TWO_SECTION_SDP = (
    "v=0\r\n"
    "o=- 0 0 IN IP4 0.0.0.0\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "m=audio 9 UDP/TLS/RTP/SAVPF 0\r\n"
    "a=mid:0\r\n"
    "m=application 9 DTLS/SCTP 5000\r\n"
    "a=mid:1\r\n"
)


def _transport(*candidates):
    gatherer = SimpleNamespace(getLocalCandidates=lambda: list(candidates))
    return SimpleNamespace(transport=SimpleNamespace(iceGatherer=gatherer))


def _candidate(port):
    return RTCIceCandidate(component=1, foundation="1", ip="192.0.2.1", port=port,
                           priority=1, protocol="udp", type="host")


def test_media_line_indexes():
    description = RTCSessionDescription(sdp=TWO_SECTION_SDP, type="offer")
    assert media_line_indexes(description) == {"0": 0, "1": 1}
    assert media_line_indexes(None) == {}


def test_local_candidates_follow_media_line_order():
    audio = _candidate(4000)
    data = _candidate(5000)
    pc = SimpleNamespace(
        localDescription=RTCSessionDescription(sdp=TWO_SECTION_SDP, type="offer"),
        getTransceivers=lambda: [SimpleNamespace(mid="0", receiver=SimpleNamespace(transport=_transport(audio)))],
        sctp=SimpleNamespace(mid="1", transport=_transport(data)),
    )

    candidates = local_candidates(pc)

    assert candidates == [audio, data]
    assert (audio.sdpMid, audio.sdpMLineIndex) == ("0", 0)
    assert (data.sdpMid, data.sdpMLineIndex) == ("1", 1)


def test_local_candidates_share_a_bundled_transport_once():
    shared = _transport(_candidate(4000))
    pc = SimpleNamespace(
        localDescription=RTCSessionDescription(sdp=TWO_SECTION_SDP, type="offer"),
        getTransceivers=lambda: [SimpleNamespace(mid="0", receiver=SimpleNamespace(transport=shared))],
        sctp=SimpleNamespace(mid="1", transport=shared),
    )

    candidates = local_candidates(pc)
    assert len(candidates) == 1
    assert candidates[0].sdpMLineIndex == 0
