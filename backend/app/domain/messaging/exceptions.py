"""Domain-level exceptions for marketplace messaging."""

from __future__ import annotations


class MessagingError(Exception):
	"""Base class for messaging errors."""

	reason: str = "messaging_error"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class RepositoryError(MessagingError):
	"""Backing-store failure: connectivity, constraint violation, missing row."""

	reason = "repository_error"


class NotFoundError(RepositoryError):
	reason = "not_found"


class ConversationConflictError(RepositoryError):
	"""An active conversation for the pair was inserted concurrently."""

	reason = "conflict"


class ValidationError(MessagingError):
	reason = "validation_error"


class ForbiddenError(MessagingError):
	reason = "forbidden"


class ReconciliationError(MessagingError):
	"""An optimistic send could not be confirmed and was rolled back."""

	reason = "send_failed"


class SubscriptionError(MessagingError):
	reason = "subscription_error"
