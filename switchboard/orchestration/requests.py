"""Active request registry: conversation id → cancellation token."""
from __future__ import annotations

import logging
from typing import Dict, Optional

from switchboard.core.context import CancellationToken

logger = logging.getLogger(__name__)


class RequestRegistry:
    """Tracks the in-flight request for each conversation.

    Starting a new request for a conversation cancels the previous one.
    Entries are removed by whoever registered them, on every exit path.
    """

    def __init__(self) -> None:
        self._active: Dict[str, CancellationToken] = {}

    def register(self, conversation_id: str, token: Optional[CancellationToken] = None) -> CancellationToken:
        previous = self._active.get(conversation_id)
        if previous is not None:
            previous.cancel("superseded")
        token = token or CancellationToken()
        self._active[conversation_id] = token
        return token

    def cancel(self, conversation_id: str) -> bool:
        token = self._active.get(conversation_id)
        if token is None:
            return False
        logger.info("Cancelling request for conversation %s", conversation_id)
        token.cancel("cancelled by client")
        return True

    def unregister(self, conversation_id: str, token: CancellationToken) -> None:
        # a newer request may already own the slot
        if self._active.get(conversation_id) is token:
            del self._active[conversation_id]

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    def __len__(self) -> int:
        return len(self._active)
