"""Domain-level exceptions for matchmaking and chat sessions."""

from __future__ import annotations

from .models import Notice


class MatchingError(Exception):
	"""Base class for matchmaking errors."""

	reason: str = "unknown"
	message: str = "Something went wrong. Please try again."
	retryable: bool = True

	def __init__(self, message: str | None = None) -> None:
		super().__init__(message or self.message)
		if message:
			self.message = message

	def to_notice(self) -> Notice:
		return Notice(code=self.reason, message=self.message, retryable=self.retryable)


class VerificationRequired(MatchingError):
	reason = "verification_required"
	message = "You need to be verified to start chatting!"
	retryable = False


class AlreadyActive(MatchingError):
	"""Searching or matched already; callers treat this as a no-op."""

	reason = "already_active"
	message = "A chat is already in progress."


class SearchTimeout(MatchingError):
	reason = "search_timeout"
	message = "No users found. Please try again later."


class PartialWriteFailure(MatchingError):
	reason = "partial_write_failure"
	message = "Failed to start matching. Please try again."

	def __init__(self, target: str, message: str | None = None) -> None:
		super().__init__(message)
		self.target = target


class SubscriptionError(MatchingError):
	reason = "subscription_error"
	message = "Connection trouble. Reconnecting…"


class GhostMatch(MatchingError):
	reason = "ghost_match"
	message = "Your chat partner was matched elsewhere. Finding someone new…"
