import logging
import secrets
import string
from typing import Dict, Iterator, Optional

logger = logging.getLogger(__name__)

_ALPHABET = string.ascii_lowercase + string.digits
PEER_ID_LENGTH = 13


class PeerRegistry:
    """Peer table: identity -> PeerSession. Only gateway handlers mutate it."""

    def __init__(self):
        self._sessions: Dict[str, object] = {}
        self._identities = set()

    def new_peer_id(self) -> str:
        while True:
            peer_id = ''.join(secrets.choice(_ALPHABET) for _ in range(PEER_ID_LENGTH))
            if peer_id not in self._identities:
                self._identities.add(peer_id)
                return peer_id

    def release_peer_id(self, peer_id: str):
        self._identities.discard(peer_id)

    def add(self, session):
        if session.peer_id in self._sessions:
            raise KeyError(f"Peer {session.peer_id} already has a live session")
        self._sessions[session.peer_id] = session

    def get(self, peer_id: str):
        return self._sessions.get(peer_id)

    def discard(self, peer_id: str, session=None) -> Optional[object]:
        """Remove the session for `peer_id`, only if it is `session` when given."""
        current = self._sessions.get(peer_id)
        if current is None or (session is not None and current is not session):
            return None
        del self._sessions[peer_id]
        logger.debug("[peer %s] Removed from peer table", peer_id)
        return current

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator:
        return iter(list(self._sessions.values()))
