"""
Chat client facade.

Wires the session, local store, key store, API client, reconciliation engine
and send pipeline together and exposes the operations a user interface needs.
"""

import logging
from typing import Optional

import httpx

from openkey_crypto.attachments import (
    AttachmentDecryptError,
    AttachmentPipeline,
    AttachmentStatus,
    AttachmentView,
)
from openkey_crypto.codec import MessageCodec
from openkey_crypto.keystore import KeyStore, KeyStoreInfo, build_keystore

from .api import ApiClient, ApiError
from .config import ClientConfig
from .models import (
    Conversation,
    Message,
    User,
    secret_conversation_id,
    split_conversation_id,
    utc_now,
)
from .reconciliation import ReconciliationEngine
from .sender import OptimisticSendPipeline, OutgoingFile
from .session import SessionContext
from .storage import LocalStore, StorageError

logger = logging.getLogger(__name__)

SECRET_CHAT_CREATED_TEXT = "Secret chat created"


class ChatClient:
    """
    Secret-chat capable messaging client.
    """

    def __init__(self, config: Optional[ClientConfig] = None,
                 http_client: Optional[httpx.AsyncClient] = None,
                 store: Optional[LocalStore] = None,
                 keystore: Optional[KeyStore] = None):
        """
        Initialize chat client.

        Args:
            config: Client settings (defaults to ClientConfig())
            http_client: Preconfigured httpx client
            store: Local store; opened from config.storage_dir when omitted
            keystore: Key store; built from config.key_policy when omitted
        """
        self.config = config or ClientConfig()
        self.session = SessionContext()

        if store is None:
            store = LocalStore(self.config.storage_dir)
            if not store.open(self.config.storage_passphrase):
                raise StorageError("Failed to unlock local store with this passphrase")
        self.store = store
        self.keystore = keystore or build_keystore(
            self.config.key_policy, store, self.config.master_secret
        )

        self.api = ApiClient(
            self.config.server_url, self.session,
            http_client=http_client, timeout=self.config.request_timeout
        )
        self.codec = MessageCodec(self.keystore)
        self.attachments = AttachmentPipeline(self.keystore)
        self.engine = ReconciliationEngine(
            self.api, self.codec, self.session, interval=self.config.poll_interval
        )
        self.sender = OptimisticSendPipeline(
            self.api, self.codec, self.attachments, self.session
        )

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    @property
    def conversations(self):
        return self.session.conversations

    # Authentication (handshake owned by the service)

    async def register(self, username: str, password: str) -> User:
        result = await self.api.register(username, password)
        return self._complete_auth(result.user.to_user(), result.token)

    async def login(self, username: str, password: str) -> User:
        result = await self.api.login(username, password)
        return self._complete_auth(result.user.to_user(), result.token)

    async def resume(self) -> bool:
        """
        Restore a session from the token saved by a previous login.

        Returns:
            True if the saved token is still valid
        """
        token = self.store.load_metadata("token")
        if not token:
            return False
        self.session.token = token
        try:
            payload = await self.api.get_me()
        except ApiError as e:
            logger.info("Saved session rejected: %s", e)
            self.logout_local()
            return False
        self._complete_auth(payload.to_user(), token)
        return True

    def _complete_auth(self, user: User, token: str) -> User:
        self.session.authenticate(user, token)
        self.store.save_metadata("token", token)
        self.store.save_metadata("user", {"id": user.id, "display_name": user.display_name})
        logger.info("Authenticated as %s", user.display_name)
        return user

    def logout_local(self):
        self.store.delete_metadata("token")
        self.session.clear()

    async def logout(self):
        """End the session; stored keys are kept on the device"""
        await self.engine.stop()
        await self.sender.drain()
        self.logout_local()

    # Sync

    def start_sync(self):
        self.engine.start()

    async def stop_sync(self):
        await self.engine.stop()

    async def refresh(self) -> bool:
        return await self.engine.run_cycle()

    # Conversations

    def get_chat(self, conversation_id: str) -> Optional[Conversation]:
        return self.session.get_conversation(conversation_id)

    async def send_message(self, conversation_id: str, text: Optional[str] = None,
                           file: Optional[OutgoingFile] = None) -> Optional[Message]:
        return await self.sender.send(conversation_id, text, file)

    def create_secret_chat(self, user_id: str) -> Optional[Conversation]:
        """
        Open an empty secret conversation with a known user.

        Returns:
            The existing or new conversation, None if the user is unknown
        """
        conversation_id = secret_conversation_id(user_id)
        existing = self.session.get_conversation(conversation_id)
        if existing is not None:
            return existing

        user = self.session.find_user(user_id)
        if user is None:
            logger.warning("Cannot create secret chat with unknown user %s", user_id)
            return None

        conversation = Conversation(
            id=conversation_id,
            counterpart=user,
            preview_text=SECRET_CHAT_CREATED_TEXT,
            preview_timestamp=utc_now(),
            secret=True,
        )
        self.session.conversations.insert(0, conversation)
        return conversation

    def delete_chat(self, conversation_id: str):
        """Drop a conversation from the local list (the next poll may restore it)"""
        self.session.remove_conversation(conversation_id)

    async def mark_chat_as_read(self, conversation_id: str):
        conversation = self.session.get_conversation(conversation_id)
        if conversation is not None:
            self.session.replace_conversation(conversation.copy(unread_count=0))

        partner_id, _ = split_conversation_id(conversation_id)
        try:
            await self.api.mark_read(partner_id)
        except ApiError as e:
            logger.error("Failed to mark as read: %s", e)

    async def open_attachment(self, message: Message) -> AttachmentView:
        """
        Fetch an attachment for display, decrypting secret ones.

        Returns:
            AttachmentView whose status tells the UI what to render
        """
        if not message.attachment_ref:
            return AttachmentView(status=AttachmentStatus.FAILED, error="Message has no attachment")
        if not message.secret:
            return AttachmentView(status=AttachmentStatus.NOT_SECRET, url=message.attachment_ref)

        try:
            blob = await self.api.download(message.attachment_ref)
            attachment = await self.attachments.decrypt_file(blob, message.attachment_kind)
        except (ApiError, AttachmentDecryptError, StorageError) as e:
            logger.error("Failed to decrypt attachment %s: %s", message.attachment_ref, e)
            return AttachmentView(status=AttachmentStatus.FAILED, url=message.attachment_ref, error=str(e))
        return AttachmentView(
            status=AttachmentStatus.READY, attachment=attachment, url=message.attachment_ref
        )

    def key_info(self) -> KeyStoreInfo:
        return self.keystore.describe()

    async def close(self):
        await self.engine.stop()
        await self.sender.drain()
        await self.api.aclose()
        self.store.close()
