"""
Reconciliation of the local conversation list against polled server state.

Each cycle reloads every counterpart and their full history, decrypts secret
messages, splits each counterpart's traffic into a plain and a secret
conversation, and merges the result with the local list so that messages the
user just sent survive until the server echoes them back.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from openkey_crypto.attachments import AttachmentKind
from openkey_crypto.codec import MessageCodec, UNAVAILABLE_TEXT

from .api import ApiClient, ApiError
from .models import (
    Conversation,
    DeliveryStatus,
    Message,
    MessagePayload,
    User,
    secret_conversation_id,
)
from .session import SessionContext

logger = logging.getLogger(__name__)

NO_MESSAGES_TEXT = "No messages"
ATTACHMENT_LABELS = {
    AttachmentKind.IMAGE: "📷 Photo",
    AttachmentKind.VIDEO: "🎬 Video",
    AttachmentKind.FILE: "📎 File",
}


def preview_for(messages: Sequence[Message]) -> Tuple[str, Optional[datetime]]:
    """
    Compute (preview text, preview timestamp) for a message list.

    The timestamp is None for an empty list.
    """
    if not messages:
        return NO_MESSAGES_TEXT, None
    last = messages[-1]
    if last.text:
        return last.text, last.timestamp
    if last.attachment_kind is not None:
        return ATTACHMENT_LABELS[last.attachment_kind], last.timestamp
    if last.attachment_ref:
        return ATTACHMENT_LABELS[AttachmentKind.FILE], last.timestamp
    return NO_MESSAGES_TEXT, last.timestamp


def count_unread(messages: Sequence[Message], current_user_id: str) -> int:
    return sum(
        1 for m in messages
        if m.sender_id != current_user_id and m.delivery_status != DeliveryStatus.READ
    )


def refresh_preview(conversation: Conversation):
    """Recompute preview fields in place; an empty list keeps the old preview."""
    text, timestamp = preview_for(conversation.messages)
    if timestamp is None:
        return
    conversation.preview_text = text
    conversation.preview_timestamp = timestamp


def build_conversations(user: User, messages: Sequence[Message],
                        current_user_id: str) -> List[Conversation]:
    """
    Partition one counterpart's history into plain and secret conversations.

    Args:
        user: The counterpart
        messages: Decrypted history in server order
        current_user_id: Id of the local user

    Returns:
        Zero, one or two conversations; empty partitions are skipped
    """
    conversations = []
    plain = [m for m in messages if not m.secret]
    secret = [m for m in messages if m.secret]

    for subset, is_secret in ((plain, False), (secret, True)):
        if not subset:
            continue
        text, timestamp = preview_for(subset)
        conversations.append(Conversation(
            id=secret_conversation_id(user.id) if is_secret else user.id,
            counterpart=user,
            preview_text=text,
            preview_timestamp=timestamp,
            unread_count=count_unread(subset, current_user_id),
            messages=list(subset),
            secret=is_secret,
        ))
    return conversations


def _unconfirmed(previous: Conversation, fresh: Conversation) -> List[Message]:
    """
    Optimistic messages of ``previous`` that ``fresh`` does not yet contain.

    A message is confirmed when its server id is in the fresh list, or, while
    its id is still unknown, when a new persisted message of ours carries the
    same text and attachment.
    """
    fresh_ids = {m.id for m in fresh.messages}
    seen_ids = {m.id for m in previous.messages if not m.optimistic}
    optimistic = [m for m in previous.messages if m.optimistic]

    claimed = {m.server_id for m in optimistic if m.server_id in fresh_ids}
    candidates = [
        m for m in fresh.messages
        if m.mine and m.id not in seen_ids and m.id not in claimed
    ]

    pending = []
    for message in optimistic:
        if message.server_id is not None:
            if message.server_id not in claimed:
                pending.append(message)
            continue
        if message.delivery_status == DeliveryStatus.FAILED:
            pending.append(message)
            continue
        match = next(
            (c for c in candidates
             if c.text == message.text and c.attachment_ref == message.attachment_ref),
            None
        )
        if match is None:
            pending.append(message)
        else:
            candidates.remove(match)
    return pending


def sort_conversations(conversations: List[Conversation]) -> List[Conversation]:
    """Most recent first; equal timestamps ordered by id."""
    ordered = sorted(conversations, key=lambda c: c.id)
    ordered.sort(key=lambda c: c.preview_timestamp, reverse=True)
    return ordered


def merge_conversations(previous: Sequence[Conversation],
                        fresh: Sequence[Conversation]) -> List[Conversation]:
    """
    Merge a freshly synthesized list into the local one.

    Args:
        previous: Current local conversations
        fresh: Conversations built from the latest snapshot

    Returns:
        Sorted merged list
    """
    previous_by_id: Dict[str, Conversation] = {c.id: c for c in previous}
    fresh_ids = {c.id for c in fresh}

    merged = []
    for conversation in fresh:
        prior = previous_by_id.get(conversation.id)
        if prior is not None:
            pending = _unconfirmed(prior, conversation)
            if pending:
                conversation = conversation.copy(messages=conversation.messages + pending)
                refresh_preview(conversation)
        merged.append(conversation)

    # Conversations the server has not seen yet: nothing persisted in them
    for prior in previous:
        if prior.id not in fresh_ids and all(m.optimistic for m in prior.messages):
            merged.append(prior)

    return sort_conversations(merged)


class ReconciliationEngine:
    """
    Polls the service and keeps the session's conversation list current.

    Only one cycle runs at a time; the periodic task schedules the next cycle
    after the previous one has settled.
    """

    def __init__(self, api: ApiClient, codec: MessageCodec, session: SessionContext,
                 interval: float = 2.0):
        """
        Initialize the engine.

        Args:
            api: Remote service client
            codec: Codec for secret message text
            session: Session whose conversations are reconciled
            interval: Seconds between cycle starts
        """
        self.api = api
        self.codec = codec
        self.session = session
        self.interval = interval
        self._inflight: Optional[asyncio.Task] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_cycle(self) -> bool:
        """
        Run one reconciliation cycle, or join the one already in flight.

        Returns:
            True if the session was updated, False if the cycle failed
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._cycle())
        return await self._inflight

    async def _cycle(self) -> bool:
        if not self.session.is_authenticated:
            return False
        token = self.session.token
        current_user_id = self.session.current_user.id

        try:
            users, histories = await self._fetch_snapshot()
        except ApiError as e:
            logger.error("Sync error, keeping previous state: %s", e)
            return False

        fresh: List[Conversation] = []
        for user, payloads in zip(users, histories):
            messages = await self._decrypt_history(payloads)
            fresh.extend(build_conversations(user, messages, current_user_id))

        if self.session.token != token:
            logger.debug("Session changed during sync, discarding snapshot")
            return False

        # No awaits below: a concurrent send cannot interleave with the merge.
        self.session.users = users
        self.session.conversations = merge_conversations(self.session.conversations, fresh)
        return True

    async def _fetch_snapshot(self) -> Tuple[List[User], List[List[MessagePayload]]]:
        user_payloads = await self.api.get_users()
        users = [p.to_user() for p in user_payloads]
        histories = await asyncio.gather(*(self.api.get_messages(u.id) for u in users))
        return users, list(histories)

    async def _decrypt_history(self, payloads: Sequence[MessagePayload]) -> List[Message]:
        texts = await asyncio.gather(*(self._open_text(p) for p in payloads))
        return [p.to_message(text) for p, text in zip(payloads, texts)]

    async def _open_text(self, payload: MessagePayload) -> str:
        if not payload.is_secret or not payload.text:
            return payload.text or ""
        try:
            return await self.codec.open(payload.text)
        except Exception:
            # Key storage failures must not abort the batch
            logger.exception("Unexpected error decrypting message %s", payload.id)
            return UNAVAILABLE_TEXT

    def start(self):
        """Start periodic reconciliation on the running event loop"""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def _run(self):
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected reconciliation failure")
            await asyncio.sleep(max(0.0, self.interval - (loop.time() - started)))

    async def stop(self):
        """Cancel periodic reconciliation and any cycle in flight"""
        for task in (self._task, self._inflight):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._inflight = None
