"""
Signaling gateway.

One websocket control connection per peer identity. The gateway answers
offers with an aiortc peer connection, relays ICE candidates and owns the
peer table. Failures stay local to the peer that caused them.
"""

import asyncio
import logging
from functools import partial

import websockets
from aiortc import RTCPeerConnection
from websockets.exceptions import ConnectionClosed

from .certs import server_ssl_context
from .config import GatewayConfig, rtc_configuration
from .errors import SignalingError
from .registry import PeerRegistry
from .session import PeerSession
from .signaling import (
    HANGUP,
    ICE_CANDIDATE,
    OFFER,
    candidate_from_json,
    candidates_message,
    decode_message,
    description_from_json,
    description_to_json,
    encode_message,
    error_message,
    local_candidates,
    peer_id_message,
)

logger = logging.getLogger(__name__)


class SignalingGateway:

    def __init__(self, config: GatewayConfig = None, peer_factory=None):
        self.config = config or GatewayConfig()
        self.registry = PeerRegistry()
        self._peer_factory = peer_factory or self._create_peer_connection

    def _create_peer_connection(self):
        return RTCPeerConnection(rtc_configuration(self.config.ice_servers))

    # --- control connection ---

    async def handler(self, websocket):
        peer_id = self.registry.new_peer_id()
        logger.info("New WebSocket connection established. Peer ID: %s", peer_id)
        try:
            await self.send(websocket, peer_id_message(peer_id))
            async for raw in websocket:
                await self.handle_message(peer_id, websocket, raw)
        except ConnectionClosed as e:
            logger.info("[peer %s] Control connection lost: %s", peer_id, e)
        except Exception:
            logger.exception("[peer %s] WebSocket error", peer_id)
        finally:
            logger.info("WebSocket connection closed for peer %s. Cleaning up RTCPeerConnection.", peer_id)
            await self.teardown(peer_id, "control connection closed")
            self.registry.release_peer_id(peer_id)

    async def send(self, websocket, message: dict) -> bool:
        try:
            await websocket.send(encode_message(message))
        except ConnectionClosed:
            logger.debug("Dropping %s message, control connection closed", message.get("type"))
            return False
        return True

    async def handle_message(self, peer_id: str, websocket, raw):
        try:
            message = decode_message(raw)
        except SignalingError as e:
            logger.warning("[peer %s] %s", peer_id, e)
            await self.send(websocket, error_message(str(e)))
            return

        kind = message["type"]
        try:
            if kind == OFFER:
                await self.handle_offer(peer_id, websocket, message)
            elif kind == ICE_CANDIDATE:
                await self.handle_candidates(peer_id, message)
            elif kind == HANGUP:
                await self.teardown(peer_id, "hangup")
            else:
                logger.warning("Unknown signaling message type from peer %s: %s", peer_id, kind)
        except SignalingError as e:
            logger.warning("[peer %s] %s", peer_id, e)
            await self.send(websocket, error_message(str(e)))

    # --- offer / answer ---

    async def handle_offer(self, peer_id: str, websocket, message: dict):
        logger.info("Received OFFER from peer %s", peer_id)
        description = description_from_json(message.get("sdp"))

        if peer_id in self.registry:
            await self.teardown(peer_id, "superseded by a new offer")
            logger.info("Existing connection for %s closed before new offer.", peer_id)

        session = PeerSession(
            peer_id,
            self._peer_factory(),
            notify=partial(self.send, websocket),
            on_closed=self._unregister,
            tick_interval=self.config.tick_interval,
        )
        self.registry.add(session)

        pc = session.pc
        try:
            await pc.setRemoteDescription(description)
            session.remote_description_set = True
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except Exception as e:
            logger.error("Error handling offer for peer %s: %s", peer_id, e)
            await self.teardown(peer_id, "negotiation failed")
            await self.send(websocket, error_message(f"Negotiation failed: {e}"))
            return

        await self.send(websocket, description_to_json(pc.localDescription))

        # gathering is complete once setLocalDescription() returns
        session.pending_candidates.extend(local_candidates(pc))
        await self.flush_candidates(session, websocket)

    async def flush_candidates(self, session: PeerSession, websocket):
        candidates, session.pending_candidates = session.pending_candidates, []
        logger.info("[peer %s] Sending %d ICE candidate(s)", session.peer_id, len(candidates))
        await self.send(websocket, candidates_message(candidates))

    async def handle_candidates(self, peer_id: str, message: dict):
        batch = message.get("candidate") or []
        if isinstance(batch, dict):
            batch = [batch]
        logger.info("Received %d ICE candidate(s) from peer %s", len(batch), peer_id)

        session = self.registry.get(peer_id)
        if session is None or not session.remote_description_set:
            logger.warning("Remote description not set yet for peer %s, cannot add ICE candidate.", peer_id)
            return

        for data in batch:
            try:
                await session.pc.addIceCandidate(candidate_from_json(data))
            except Exception as e:
                logger.error("Error adding ICE candidate for peer %s: %s", peer_id, e)

    # --- teardown ---

    def _unregister(self, session: PeerSession):
        self.registry.discard(session.peer_id, session)

    async def teardown(self, peer_id: str, reason: str):
        session = self.registry.get(peer_id)
        if session is None:
            return
        try:
            await session.close(reason)
        except Exception as e:
            logger.error("[peer %s] Error during teardown: %s", peer_id, e)
        # unregistered by the session itself, unless closing raised first
        self.registry.discard(peer_id, session)

    async def close_all(self):
        await asyncio.gather(
            *(self.teardown(session.peer_id, "gateway shutdown") for session in self.registry)
        )

    async def serve(self):
        ssl_context = None
        if self.config.tls:
            ssl_context = server_ssl_context(self.config.cert_file, self.config.key_file)
        scheme = "wss" if ssl_context else "ws"

        async with websockets.serve(self.handler, self.config.host, self.config.port, ssl=ssl_context):
            logger.info("WebRTC signaling gateway listening on %s://%s:%d",
                        scheme, self.config.host, self.config.port)
            try:
                await asyncio.Future()
            finally:
                await self.close_all()
