"""Roulette matchmaking: queue, pairing, room chat and the per-client session."""

from .exceptions import (
	AlreadyActive,
	GhostMatch,
	MatchingError,
	PartialWriteFailure,
	SearchTimeout,
	SubscriptionError,
	VerificationRequired,
)
from .matchmaker import Matchmaker
from .messages import MessageChannel
from .models import ChatMessage, MatchRecord, Notice, QueueEntry, SessionSnapshot, SessionState
from .notifications import NotificationBridge
from .queue import QueueManager
from .session import SessionConfig, SessionController

__all__ = [
	"AlreadyActive",
	"ChatMessage",
	"GhostMatch",
	"MatchRecord",
	"MatchingError",
	"Matchmaker",
	"MessageChannel",
	"Notice",
	"NotificationBridge",
	"PartialWriteFailure",
	"QueueEntry",
	"QueueManager",
	"SearchTimeout",
	"SessionConfig",
	"SessionController",
	"SessionSnapshot",
	"SessionState",
	"SubscriptionError",
	"VerificationRequired",
]
