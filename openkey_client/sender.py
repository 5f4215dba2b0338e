"""
Optimistic message sending.

A send shows the plaintext message locally right away, then dispatches the
(possibly encrypted) form to the service in the background.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Set

from openkey_crypto.attachments import (
    AttachmentKind,
    AttachmentPipeline,
    ENCRYPTED_MEDIA_TYPE,
    ENCRYPTED_SUFFIX,
    classify_media_type,
)
from openkey_crypto.codec import MessageCodec
from openkey_crypto.primitives import CryptoError

from .api import ApiClient, ApiError, UploadFailure
from .models import (
    Conversation,
    DeliveryStatus,
    Message,
    User,
    split_conversation_id,
    utc_now,
)
from .reconciliation import refresh_preview
from .session import SessionContext
from .storage import StorageError

logger = logging.getLogger(__name__)


@dataclass
class OutgoingFile:
    """A file picked by the user for sending"""
    name: str
    media_type: str
    data: bytes


class OptimisticSendPipeline:
    """
    Sends messages with immediate local echo.
    """

    def __init__(self, api: ApiClient, codec: MessageCodec,
                 attachments: AttachmentPipeline, session: SessionContext):
        self.api = api
        self.codec = codec
        self.attachments = attachments
        self.session = session
        self._dispatches: Set[asyncio.Task] = set()

    async def send(self, conversation_id: str, text: Optional[str] = None,
                   file: Optional[OutgoingFile] = None) -> Optional[Message]:
        """
        Send a message to a conversation.

        Args:
            conversation_id: Plain counterpart id or ``secret_<id>``
            text: Message text
            file: Attachment to upload

        Returns:
            The optimistic message, or None if nothing was sent
        """
        if not self.session.is_authenticated:
            logger.warning("Send ignored: not authenticated")
            return None
        if not text and file is None:
            return None

        counterpart_id, secret = split_conversation_id(conversation_id)

        content = text or ""
        if secret and text:
            try:
                content = await self.codec.seal(text)
            except (CryptoError, StorageError) as e:
                logger.error("Message encryption failed: %s", e)
                return None

        attachment_url = None
        attachment_kind: Optional[AttachmentKind] = None
        if file is not None:
            try:
                attachment_url = await self._upload(file, secret)
            except (CryptoError, StorageError, UploadFailure) as e:
                logger.error("File upload failed: %s", e)
                return None
            attachment_kind = classify_media_type(file.media_type)

        message = Message(
            id=f"local-{uuid.uuid4().hex}",
            sender_id=self.session.current_user.id,
            text=text or "",
            timestamp=utc_now(),
            mine=True,
            delivery_status=DeliveryStatus.SENT,
            secret=secret,
            attachment_ref=attachment_url,
            attachment_kind=attachment_kind,
            optimistic=True,
        )
        self._append(conversation_id, counterpart_id, secret, message)

        task = asyncio.create_task(self._dispatch(
            message, counterpart_id, content, attachment_url, attachment_kind, secret
        ))
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)
        return message

    async def _upload(self, file: OutgoingFile, secret: bool) -> str:
        if secret:
            data = await self.attachments.encrypt_file(file.data, file.media_type)
            result = await self.api.upload(file.name + ENCRYPTED_SUFFIX, data, ENCRYPTED_MEDIA_TYPE)
        else:
            result = await self.api.upload(file.name, file.data, file.media_type)
        return result.url

    def _append(self, conversation_id: str, counterpart_id: str, secret: bool,
                message: Message):
        conversation = self.session.get_conversation(conversation_id)
        if conversation is None:
            counterpart = self.session.find_user(counterpart_id) or User(
                id=counterpart_id, display_name=counterpart_id
            )
            conversation = Conversation(
                id=conversation_id,
                counterpart=counterpart,
                preview_text="",
                preview_timestamp=message.timestamp,
                secret=secret,
            )
        else:
            conversation = conversation.copy()
        conversation.messages.append(message)
        refresh_preview(conversation)
        self.session.replace_conversation(conversation)

    async def _dispatch(self, message: Message, receiver_id: str, content: str,
                        attachment_url: Optional[str],
                        attachment_kind: Optional[AttachmentKind], secret: bool):
        try:
            result = await self.api.send_message(
                receiver_id, content, attachment_url, attachment_kind, secret
            )
        except ApiError as e:
            logger.error("Send failed: %s", e)
            message.delivery_status = DeliveryStatus.FAILED
            return
        message.server_id = result.id

    async def drain(self):
        """Wait for every background dispatch to settle"""
        if self._dispatches:
            await asyncio.gather(*list(self._dispatches), return_exceptions=True)
