"""Marketplace messaging domain exports."""

from .conversations import ConversationRepository
from .messages import MessageRepository
from .service import MessagingStore
from .store import InMemoryBackingStore, PostgresBackingStore, create_backing_store, get_backing_store, set_backing_store

__all__ = [
	"ConversationRepository",
	"InMemoryBackingStore",
	"MessageRepository",
	"MessagingStore",
	"PostgresBackingStore",
	"create_backing_store",
	"get_backing_store",
	"set_backing_store",
]
