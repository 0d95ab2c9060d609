"""
Control-plane messages (JSON over a websocket).

    peerId        gateway -> client   {"type": "peerId", "peerId": str}
    offer         client -> gateway   {"type": "offer", "sdp": {"type", "sdp"}}
    answer        gateway -> client   {"type": "answer", "sdp": str}
    iceCandidate  both                {"type": "iceCandidate", "candidate": [...]}
    hangup        client -> gateway   {"type": "hangup"}
    error         gateway -> client   {"type": "error", "data": str}
"""

import json
from typing import Dict, List, Optional

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import SessionDescription, candidate_from_sdp, candidate_to_sdp

from .errors import SignalingError

PEER_ID = "peerId"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "iceCandidate"
HANGUP = "hangup"
ERROR = "error"


def decode_message(raw) -> dict:
    if isinstance(raw, bytes):
        raw = raw.decode()
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SignalingError(f"Invalid JSON signaling message: {e}")
    if not isinstance(message, dict) or "type" not in message:
        raise SignalingError("Signaling message must be an object with a 'type'")
    return message


def encode_message(message: dict) -> str:
    return json.dumps(message)


def peer_id_message(peer_id: str) -> dict:
    return {"type": PEER_ID, "peerId": peer_id}


def error_message(text: str) -> dict:
    return {"type": ERROR, "data": text}


def description_to_json(description: RTCSessionDescription) -> dict:
    return {"type": description.type, "sdp": description.sdp}


def description_from_json(data) -> RTCSessionDescription:
    if not isinstance(data, dict) or "sdp" not in data or "type" not in data:
        raise SignalingError("Session description must carry 'type' and 'sdp'")
    return RTCSessionDescription(sdp=data["sdp"], type=data["type"])


def candidate_to_json(candidate: RTCIceCandidate) -> dict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_json(data: dict) -> Optional[RTCIceCandidate]:
    """Parse a browser style candidate. An empty candidate means end-of-candidates."""
    text = data.get("candidate") or ""
    if not text:
        return None
    if text.startswith("candidate:"):
        text = text.split(":", 1)[1]
    try:
        candidate = candidate_from_sdp(text)
    except (AssertionError, ValueError, IndexError) as e:
        raise SignalingError(f"Malformed ICE candidate {data.get('candidate')!r}: {e}")
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def candidates_message(candidates: List[RTCIceCandidate]) -> dict:
    return {"type": ICE_CANDIDATE, "candidate": [candidate_to_json(c) for c in candidates]}


def media_line_indexes(description) -> Dict[str, int]:
    """Map each media id to the position of its m-line in `description`."""
    if description is None:
        return {}
    parsed = SessionDescription.parse(description.sdp)
    return {media.rtp.muxId: index for index, media in enumerate(parsed.media) if media.rtp.muxId is not None}


def local_candidates(pc) -> List[RTCIceCandidate]:
    """
    Local candidates of a connection whose local description is set.
    aiortc finishes gathering inside setLocalDescription().
    """
    candidates = []
    transports = []
    indexes = media_line_indexes(pc.localDescription)
    for transceiver in pc.getTransceivers():
        if transceiver.mid is None:
            continue
        transports.append((transceiver.receiver.transport.transport, transceiver.mid, indexes.get(transceiver.mid, 0)))
    sctp = getattr(pc, "sctp", None)
    if sctp is not None and sctp.mid is not None:
        transports.append((sctp.transport.transport, sctp.mid, indexes.get(sctp.mid, 0)))

    seen = set()
    for ice_transport, mid, index in transports:
        if id(ice_transport) in seen:
            continue
        seen.add(id(ice_transport))
        for candidate in ice_transport.iceGatherer.getLocalCandidates():
            candidate.sdpMid = mid
            candidate.sdpMLineIndex = index
            candidates.append(candidate)
    return candidates
