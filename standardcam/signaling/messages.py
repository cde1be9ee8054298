"""
Signaling message envelope and tolerant handshake payload decoding.

Browsers, older clients and hand-written tools do not always send handshake
payloads in the canonical shape. The decoders below accept the canonical
shape first, then fall back to a bounded, one-level repair before giving up
with a HandshakeError.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from standardcam.core.exceptions import HandshakeError

SDP_MARKER = "v=0"
CANDIDATE_MARKER = "candidate:"

# Relay wire events
EVENT_SERVER_MESSAGE = "server-message"
EVENT_JOIN_ROOM = "join-room"
EVENT_ROOM_JOINED = "room-joined"
EVENT_USER_CONNECTED = "user-connected"
EVENT_USER_DISCONNECTED = "user-disconnected"


class MessageKind(str, Enum):
    """Handshake message kinds carried by the relay."""

    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


@dataclass(frozen=True)
class SignalingMessage:
    """One relayed handshake message; the relay only reads this envelope."""

    kind: MessageKind
    payload: Any
    sender: str
    target: str
    room: str


def _scan_for(payload: Dict[str, Any], marker: str) -> Optional[str]:
    """Return the first top-level string value containing `marker`."""
    for value in payload.values():
        if isinstance(value, str) and marker in value:
            return value
    return None


def decode_description(payload: Any, expected: MessageKind) -> RTCSessionDescription:
    """
    Decode an offer/answer payload into an RTCSessionDescription.

    Accepted shapes, in order:
      - ``{"type": "offer"|"answer", "sdp": "..."}``
      - ``{"sdp": "..."}`` (tagged with the kind expected in context)
      - any dict with one top-level string holding an SDP body
    """
    if expected not in (MessageKind.OFFER, MessageKind.ANSWER):
        raise HandshakeError("Session descriptions are only offers or answers",
                             {"expected": expected.value})

    if not isinstance(payload, dict):
        raise HandshakeError("Unrecognized session description payload",
                             {"payload_type": type(payload).__name__})

    sdp = payload.get("sdp")
    sdp_type = payload.get("type")

    if isinstance(sdp, str) and sdp:
        if sdp_type is None:
            sdp_type = expected.value
        if sdp_type != expected.value:
            raise HandshakeError("Session description type mismatch",
                                 {"expected": expected.value, "received": sdp_type})
        return RTCSessionDescription(sdp=sdp, type=sdp_type)

    sdp = _scan_for(payload, SDP_MARKER)
    if sdp is None:
        raise HandshakeError("Payload does not carry an SDP body",
                             {"keys": list(payload.keys())})
    return RTCSessionDescription(sdp=sdp, type=expected.value)


def decode_candidate(payload: Any) -> Optional[RTCIceCandidate]:
    """
    Decode a trickled ICE candidate.

    Returns None for the end-of-candidates marker (an empty candidate string).
    """
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    if isinstance(payload, str):
        candidate_str = payload
    elif isinstance(payload, dict):
        candidate_str = payload.get("candidate")
        sdp_mid = payload.get("sdpMid")
        sdp_mline_index = payload.get("sdpMLineIndex")
        if candidate_str is None:
            candidate_str = _scan_for(payload, CANDIDATE_MARKER)
        if not isinstance(candidate_str, str):
            raise HandshakeError("Unrecognized ICE candidate payload",
                                 {"keys": list(payload.keys())})
    else:
        raise HandshakeError("Unrecognized ICE candidate payload",
                             {"payload_type": type(payload).__name__})

    if not candidate_str:
        return None

    if sdp_mid is None and sdp_mline_index is None:
        sdp_mid, sdp_mline_index = "0", 0

    line = candidate_str
    if line.startswith("a="):
        line = line[2:]
    if line.startswith(CANDIDATE_MARKER):
        line = line[len(CANDIDATE_MARKER):]

    # foundation component protocol priority ip port "typ" type
    if len(line.split()) < 8:
        raise HandshakeError("Malformed ICE candidate", {"candidate": candidate_str})

    try:
        candidate = candidate_from_sdp(line)
    except (ValueError, IndexError) as e:
        raise HandshakeError("Malformed ICE candidate", {"candidate": candidate_str, "error": str(e)})

    candidate.sdpMid = sdp_mid
    candidate.sdpMLineIndex = sdp_mline_index
    return candidate


def encode_description(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def encode_candidate(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": CANDIDATE_MARKER + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }
