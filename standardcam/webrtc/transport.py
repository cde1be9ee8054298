"""
Peer transport capability.

`PeerTransport` is the narrow surface a PeerSession needs from a peer
connection library. `AiortcPeerTransport` implements it on top of aiortc:
one RTCPeerConnection carrying the local media tracks plus one ordered data
channel for point-cloud and control messages.
"""
import asyncio
import datetime
from typing import Any, List, Optional, Sequence, Union

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCDataChannel,
    RTCIceCandidate,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidStateError

from standardcam.core.exceptions import HandshakeError, StandardCamError, TransportOverflow
from standardcam.core.logging import LoggerMixin, debug_log
from standardcam.signaling.messages import MessageKind, encode_description

# Browsers close SCTP associations well above this; treat it as the queue limit.
DEFAULT_MAX_BUFFERED = 16 * 1024 * 1024

TRANSPORT_CALLBACKS = (
    'on_signal',        # (MessageKind, payload)
    'on_connected',     # ()
    'on_data_open',     # ()
    'on_data',          # (str | bytes)
    'on_data_closed',   # ()
    'on_track',         # (MediaStreamTrack)
    'on_error',         # (Exception)
    'on_closed',        # ()
)


class PeerTransport(LoggerMixin):
    """Capability interface between a PeerSession and a peer connection stack."""

    def __init__(self):
        super().__init__()
        for name in TRANSPORT_CALLBACKS:
            setattr(self, name, None)

    async def _fire(self, name: str, *args: Any):
        """Invoke a callback, awaiting it if it returns a coroutine."""
        callback = getattr(self, name, None)
        if callback is None:
            return
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            self.log_error("Error in transport callback", {
                "callback": name,
                "error": str(e),
                "error_type": type(e).__name__
            })

    async def initiate(self):
        """Start negotiation as the offering side."""
        raise NotImplementedError

    async def accept(self, offer: RTCSessionDescription):
        """Apply a remote offer and answer it."""
        raise NotImplementedError

    async def signal(self, payload: Union[RTCSessionDescription, RTCIceCandidate, None]):
        """Apply a remote answer or ICE candidate (None marks end of candidates)."""
        raise NotImplementedError

    def send(self, data: Union[str, bytes]) -> bool:
        """
        Queue `data` on the data channel.

        Returns False when the channel is not open; raises TransportOverflow
        when the send queue is full.
        """
        raise NotImplementedError

    def outstanding_bytes(self) -> int:
        raise NotImplementedError

    @property
    def connected(self) -> bool:
        raise NotImplementedError

    @property
    def data_ready(self) -> bool:
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


class AiortcPeerTransport(PeerTransport):
    """PeerTransport backed by an aiortc RTCPeerConnection."""

    def __init__(self, rtc_config: Optional[RTCConfiguration] = None, label: str = "pointcloud",
                 media_tracks: Sequence[MediaStreamTrack] = (), max_buffered: int = DEFAULT_MAX_BUFFERED):
        super().__init__()
        self.label = label
        self.max_buffered = max_buffered
        self.pc = RTCPeerConnection(configuration=rtc_config)
        self.channel: Optional[RTCDataChannel] = None
        self._pending_candidates: List[RTCIceCandidate] = []
        self._closed = False

        for track in media_tracks:
            self.pc.addTrack(track)

        self._setup_peer_connection_handlers()

    def _setup_peer_connection_handlers(self):
        pc = self.pc

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            debug_log(f"🔗 [Transport] Connection state changed", {
                "connection_state": pc.connectionState,
                "timestamp": datetime.datetime.now().isoformat()
            })
            if pc.connectionState == "connected":
                await self._fire('on_connected')
            elif pc.connectionState == "failed":
                await self._fire('on_error', StandardCamError("Peer connection failed"))
            elif pc.connectionState == "closed" and not self._closed:
                await self._fire('on_closed')

        @pc.on("iceconnectionstatechange")
        async def on_ice_connection_state_change():
            self.log_debug("ICE connection state changed", {"ice_state": pc.iceConnectionState})

        @pc.on("datachannel")
        async def on_datachannel(channel: RTCDataChannel):
            if channel.label != self.label:
                self.log_warning("Ignoring unexpected data channel", {"label": channel.label})
                return
            await self._adopt_channel(channel)

        @pc.on("track")
        async def on_track(track: MediaStreamTrack):
            debug_log(f"🎥 [Transport] Remote track received", {"kind": track.kind})
            await self._fire('on_track', track)

    async def _adopt_channel(self, channel: RTCDataChannel):
        self.channel = channel

        @channel.on("open")
        async def on_open():
            await self._fire('on_data_open')

        @channel.on("message")
        async def on_message(message):
            await self._fire('on_data', message)

        @channel.on("close")
        async def on_close():
            await self._fire('on_data_closed')

        # Channels announced through "datachannel" are already open
        if channel.readyState == "open":
            await self._fire('on_data_open')

    async def _emit_local_description(self, kind: MessageKind):
        # aiortc gathers candidates before setLocalDescription returns, so
        # they travel inside the SDP rather than as trickled candidates.
        description = self.pc.localDescription
        debug_log(f"📡 [Transport] Local description ready", {
            "type": description.type,
            "sdp_length": len(description.sdp),
            "candidate_count": description.sdp.count("a=candidate:")
        })
        await self._fire('on_signal', kind, encode_description(description))

    async def initiate(self):
        channel = self.pc.createDataChannel(self.label, ordered=True)
        await self._adopt_channel(channel)
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        await self._emit_local_description(MessageKind.OFFER)

    async def accept(self, offer: RTCSessionDescription):
        if offer.type != "offer":
            raise HandshakeError("Expected an offer", {"type": offer.type})
        await self.pc.setRemoteDescription(offer)
        await self._apply_pending_candidates()
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        await self._emit_local_description(MessageKind.ANSWER)

    async def signal(self, payload: Union[RTCSessionDescription, RTCIceCandidate, None]):
        if payload is None:
            return
        if isinstance(payload, RTCSessionDescription):
            if payload.type == "offer":
                await self.accept(payload)
            else:
                await self.pc.setRemoteDescription(payload)
                await self._apply_pending_candidates()
        elif isinstance(payload, RTCIceCandidate):
            # Candidates may overtake the description they belong to
            if self.pc.remoteDescription is None:
                self._pending_candidates.append(payload)
            else:
                await self.pc.addIceCandidate(payload)
        else:
            raise HandshakeError("Unsupported signal payload", {"payload_type": type(payload).__name__})

    async def _apply_pending_candidates(self):
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self.pc.addIceCandidate(candidate)

    def send(self, data: Union[str, bytes]) -> bool:
        if not self.data_ready:
            return False
        if self.channel.bufferedAmount + len(data) > self.max_buffered:
            raise TransportOverflow("send queue is full", {
                "buffered_amount": self.channel.bufferedAmount,
                "message_length": len(data)
            })
        try:
            self.channel.send(data)
        except InvalidStateError:
            return False
        return True

    def outstanding_bytes(self) -> int:
        if self.channel is None:
            return 0
        return self.channel.bufferedAmount

    @property
    def connected(self) -> bool:
        return self.pc.connectionState == "connected"

    @property
    def data_ready(self) -> bool:
        return self.channel is not None and self.channel.readyState == "open"

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self._pending_candidates.clear()
        await self.pc.close()
