"""
Process-scoped session state.

One SessionContext is created per client and injected into the API client,
the reconciliation engine and the send pipeline.
"""

from typing import List, Optional

from .models import Conversation, User


class SessionContext:
    """
    Current user, auth token and the local conversation cache.

    Filled by authenticate() and emptied by clear() on logout.
    """

    def __init__(self):
        self.current_user: Optional[User] = None
        self.token: Optional[str] = None
        self.users: List[User] = []
        self.conversations: List[Conversation] = []

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None and self.current_user is not None

    def authenticate(self, user: User, token: str):
        self.current_user = user
        self.token = token

    def clear(self):
        self.current_user = None
        self.token = None
        self.users = []
        self.conversations = []

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def replace_conversation(self, conversation: Conversation):
        """Swap in a conversation by id, or prepend it if new"""
        for index, existing in enumerate(self.conversations):
            if existing.id == conversation.id:
                self.conversations[index] = conversation
                return
        self.conversations.insert(0, conversation)

    def remove_conversation(self, conversation_id: str):
        self.conversations = [c for c in self.conversations if c.id != conversation_id]

    def find_user(self, user_id: str) -> Optional[User]:
        for user in self.users:
            if user.id == user_id:
                return user
        return None
