# src/orchestration/debounce.py

"""
Debounce trigger - coalesces bursts of inbound messages into one turn.

Each inbound message:
1. is recorded in the processed ledger (message_id, account_id); a message
   already present is dropped
2. moves the conversation's single `respond_at` to now + wait_seconds

A scheduler tick (fire_due) claims due rows, re-checks the stored
timestamp, and runs one turn per conversation with the latest inbound
text under a per-conversation lock.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from src.errors import OrchestrationError
from src.llm import LLMError
from src.logger import logger
from src.session_lock import SessionLockManager
from src.settings import settings
from src.store import CRMStore

from .engine import InboundMessage, OrchestrationEngine, TurnResult


@dataclass
class InboundReceipt:
    accepted: bool
    duplicate: bool = False
    respond_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"accepted": self.accepted, "duplicate": self.duplicate, "respond_at": self.respond_at}


class DebounceTrigger:
    """
    Args:
        store: CRM datastore (ledger + pending_responses)
        engine: Engine that runs the turn
        wait_seconds: Debounce window (settings.debounce.wait_seconds)
        lock_manager: Per-conversation file locks
    """

    def __init__(
        self,
        store: CRMStore,
        engine: OrchestrationEngine,
        wait_seconds: Optional[float] = None,
        lock_manager: Optional[SessionLockManager] = None,
    ):
        self.store = store
        self.engine = engine
        self.wait_seconds = float(
            wait_seconds if wait_seconds is not None else settings.debounce.wait_seconds
        )
        self.lock_manager = lock_manager or SessionLockManager()

    def register_inbound(
        self,
        message_id: str,
        account_id: str,
        conversation_id: str,
        now: Optional[float] = None,
    ) -> InboundReceipt:
        """Record the message and push the conversation's respond-at forward."""
        if not self.store.mark_processed(message_id, account_id):
            logger.info("Duplicate inbound ignored", message_id=message_id)
            return InboundReceipt(accepted=False, duplicate=True)

        respond_at = (now if now is not None else time.time()) + self.wait_seconds
        self.store.upsert_pending(conversation_id, account_id, respond_at)
        logger.debug("Response scheduled", conversation=conversation_id, respond_at=respond_at)
        return InboundReceipt(accepted=True, respond_at=respond_at)

    def claim(self, conversation_id: str) -> bool:
        return self.store.claim_pending(conversation_id)

    def fire_due(self, now: Optional[float] = None) -> List[str]:
        """
        Run every due conversation once.

        Returns:
            Conversation ids that produced a turn
        """
        now = now if now is not None else time.time()
        processed = []
        for row in self.store.due_pending(now):
            conversation_id = row["conversation_id"]
            if not self.claim(conversation_id):
                continue

            current = self.store.get_pending(conversation_id)
            if current is None:
                continue
            if current["respond_at"] > now:
                # A newer message moved the target after this row was read
                self.store.release_pending(conversation_id)
                logger.debug("Pending response moved, skipping", conversation=conversation_id)
                continue

            if self._process(conversation_id, current["respond_at"]) is not None:
                processed.append(conversation_id)
        return processed

    def run_now(self, conversation_id: str) -> Optional[TurnResult]:
        """Respond immediately, ignoring the debounce window."""
        pending = self.store.get_pending(conversation_id)
        if pending is not None and not self.claim(conversation_id):
            logger.info("Conversation already being processed", conversation=conversation_id)
            return None
        return self._process(conversation_id, pending["respond_at"] if pending else None)

    def _process(self, conversation_id: str, claimed_at: Optional[float]) -> Optional[TurnResult]:
        try:
            inbound = self._latest_inbound(conversation_id)
            if inbound is None:
                return None
            with self.lock_manager.lock(conversation_id):
                return self.engine.run_turn(inbound)
        except (OrchestrationError, LLMError) as e:
            logger.error("Debounced turn failed", conversation=conversation_id, error=str(e))
            return None
        finally:
            self.store.finish_pending(conversation_id, claimed_at)

    def _latest_inbound(self, conversation_id: str) -> Optional[InboundMessage]:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None or not conversation.get("agent_active"):
            logger.info("AI inactive for conversation, dropping pending response", conversation=conversation_id)
            return None

        message = self.store.last_inbound_message(conversation_id)
        if message is None:
            return None
        metadata = message.get("metadata") or {}
        return InboundMessage(
            conversation_id=conversation_id,
            account_id=conversation["account_id"],
            contact_id=conversation["contact_id"],
            text=message.get("content") or "",
            message_kind=message.get("kind") or "text",
            media_text=metadata.get("media_text"),
            message_id=metadata.get("message_id"),
        )
