"""
OpenKey chat client.

Keeps a local view of the user's conversations in sync with the chat
service and handles secret-chat encryption on the device.
"""

from .config import ClientConfig
from .models import (
    Conversation,
    DeliveryStatus,
    Message,
    User,
    SECRET_PREFIX
)
from .session import SessionContext
from .storage import LocalStore
from .api import ApiClient, ApiError, FetchFailure, SendFailure, UploadFailure, AuthFailure
from .reconciliation import ReconciliationEngine, merge_conversations, build_conversations
from .sender import OptimisticSendPipeline, OutgoingFile
from .service import ChatClient

__all__ = [
    'ClientConfig',
    'Conversation',
    'DeliveryStatus',
    'Message',
    'User',
    'SECRET_PREFIX',
    'SessionContext',
    'LocalStore',
    'ApiClient',
    'ApiError',
    'FetchFailure',
    'SendFailure',
    'UploadFailure',
    'AuthFailure',
    'ReconciliationEngine',
    'merge_conversations',
    'build_conversations',
    'OptimisticSendPipeline',
    'OutgoingFile',
    'ChatClient'
]
