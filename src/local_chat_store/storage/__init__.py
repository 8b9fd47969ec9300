from loguru import logger

from local_chat_store.storage.async_store import AsyncChatStore
from local_chat_store.storage.auto_prune import AutoPruner
from local_chat_store.storage.errors import (
    ConstraintViolationError,
    ReadCancelledError,
    ResourceBusyError,
    SchemaMismatchError,
    StoreError,
    TransactionFailedError,
)
from local_chat_store.storage.messages import MessageStore
from local_chat_store.storage.models import ChatSession, Message
from local_chat_store.storage.pruning import offline_threshold, prune_offline_messages
from local_chat_store.storage.schema import Migration, SchemaManager, StoreCallback
from local_chat_store.storage.sessions import SessionStore
from local_chat_store.storage.store import ChatStore

__all__ = [
    "AsyncChatStore",
    "AutoPruner",
    "ChatSession",
    "ChatStore",
    "ConstraintViolationError",
    "Message",
    "MessageStore",
    "Migration",
    "ReadCancelledError",
    "ResourceBusyError",
    "SchemaManager",
    "SchemaMismatchError",
    "SessionStore",
    "StoreCallback",
    "StoreError",
    "TransactionFailedError",
    "offline_threshold",
    "prune_offline_messages",
]

# Library code stays quiet unless the application opts in via setup_logging().
logger.disable("local_chat_store")
