"""Domain models for roulette matchmaking and chat sessions."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import ulid

from gigglo.domain.identity import PublicInfo

SYSTEM_SENDER = "system"
QUEUE_COLLECTION = "queue"
MATCHES_COLLECTION = "matches"

QUICK_REACTIONS: Tuple[str, ...] = ("🔥", "😂", "❤️", "😢", "😮", "👍", "🤔", "😎")


def queue_key(uid: str) -> str:
	return f"{QUEUE_COLLECTION}/{uid}"


def match_key(uid: str) -> str:
	return f"{MATCHES_COLLECTION}/{uid}"


def room_messages_key(room_id: str) -> str:
	return f"chats/{room_id}/messages"


def new_room_id() -> str:
	# ULIDs are a millisecond timestamp followed by 80 random bits
	return f"room_{ulid.new()}"


def format_time_left(seconds: int) -> str:
	seconds = max(0, int(seconds))
	return f"{seconds // 60}:{seconds % 60:02d}"


class SessionState(str, enum.Enum):
	IDLE = "idle"
	SEARCHING = "searching"
	MATCHED = "matched"


@dataclass(slots=True, frozen=True)
class QueueEntry:
	uid: str
	display_name: str
	group_attributes: Dict[str, str]
	joined_at: int

	@property
	def info(self) -> PublicInfo:
		return PublicInfo(uid=self.uid, display_name=self.display_name, group_attributes=dict(self.group_attributes))

	def to_dict(self) -> Dict[str, Any]:
		return {
			"uid": self.uid,
			"display_name": self.display_name,
			"group_attributes": dict(self.group_attributes),
			"joined_at": self.joined_at,
		}

	@classmethod
	def from_dict(cls, data: Mapping[str, Any]) -> "QueueEntry":
		info = PublicInfo.from_dict(data)
		return cls(
			uid=info.uid,
			display_name=info.display_name,
			group_attributes=info.group_attributes,
			joined_at=int(data["joined_at"]),
		)


@dataclass(slots=True, frozen=True)
class MatchRecord:
	room_id: str
	partner: PublicInfo
	created_at: int

	def to_dict(self) -> Dict[str, Any]:
		return {
			"room_id": self.room_id,
			"partner": self.partner.to_dict(),
			"created_at": self.created_at,
		}

	@classmethod
	def from_dict(cls, data: Mapping[str, Any]) -> "MatchRecord":
		return cls(
			room_id=str(data["room_id"]),
			partner=PublicInfo.from_dict(data["partner"]),
			created_at=int(data.get("created_at") or 0),
		)

	def points_to(self, uid: str, room_id: str) -> bool:
		return self.partner.uid == uid and self.room_id == room_id


@dataclass(slots=True, frozen=True)
class MessageFlags:
	is_reaction: bool = False
	is_system: bool = False
	is_skip_action: bool = False


@dataclass(slots=True, frozen=True)
class ChatMessage:
	id: str
	room_id: str
	sender: str
	text: str
	timestamp: int
	flags: MessageFlags = field(default_factory=MessageFlags)

	@property
	def is_system(self) -> bool:
		return self.flags.is_system

	@property
	def is_skip_action(self) -> bool:
		return self.flags.is_skip_action

	def to_store(self) -> Dict[str, Any]:
		"""Row written to the room list; the id comes back from the store."""
		payload: Dict[str, Any] = {
			"sender": self.sender,
			"text": self.text,
			"timestamp": self.timestamp,
		}
		if self.flags.is_reaction:
			payload["isReaction"] = True
		if self.flags.is_system:
			payload["isSystem"] = True
		if self.flags.is_skip_action:
			payload["isSkipAction"] = True
		return payload

	@classmethod
	def from_store(cls, item_id: str, room_id: str, data: Mapping[str, Any]) -> "ChatMessage":
		return cls(
			id=item_id,
			room_id=room_id,
			sender=str(data.get("sender") or ""),
			text=str(data.get("text") or ""),
			timestamp=int(data.get("timestamp") or 0),
			flags=MessageFlags(
				is_reaction=bool(data.get("isReaction", False)),
				is_system=bool(data.get("isSystem", False)),
				is_skip_action=bool(data.get("isSkipAction", False)),
			),
		)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"id": self.id,
			"room_id": self.room_id,
			"sender": self.sender,
			"text": self.text,
			"timestamp": self.timestamp,
			"is_reaction": self.flags.is_reaction,
			"is_system": self.flags.is_system,
			"is_skip_action": self.flags.is_skip_action,
		}


@dataclass(slots=True, frozen=True)
class Notice:
	"""Transient error/notice attached to whatever state the controller is in."""

	code: str
	message: str
	retryable: bool = True

	def to_dict(self) -> Dict[str, Any]:
		return {"code": self.code, "message": self.message, "retryable": self.retryable}


@dataclass(slots=True, frozen=True)
class SessionSnapshot:
	uid: str
	state: SessionState
	generation: int
	connection_status: str
	time_left: int
	can_extend: bool
	notice: Optional[Notice] = None
	partner: Optional[PublicInfo] = None
	room_id: Optional[str] = None
	messages: Tuple[ChatMessage, ...] = ()

	def to_dict(self) -> Dict[str, Any]:
		return {
			"uid": self.uid,
			"state": self.state.value,
			"generation": self.generation,
			"connection_status": self.connection_status,
			"time_left": self.time_left,
			"time_left_display": format_time_left(self.time_left),
			"can_extend": self.can_extend,
			"notice": self.notice.to_dict() if self.notice else None,
			"partner": self.partner.to_dict() if self.partner else None,
			"room_id": self.room_id,
			"messages": [message.to_dict() for message in self.messages],
		}
