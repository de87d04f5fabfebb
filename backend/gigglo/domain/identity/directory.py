"""Profile lookups.

Signup and the verification workflow live outside this service; all the
matchmaker needs is whether a uid is verified and what it may show a partner.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol

from gigglo.infra.store import Store


def user_key(uid: str) -> str:
	return f"users/{uid}"


@dataclass(slots=True, frozen=True)
class PublicInfo:
	"""The part of a profile a partner gets to see."""

	uid: str
	display_name: str = ""
	group_attributes: Dict[str, str] = field(default_factory=dict)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"uid": self.uid,
			"display_name": self.display_name,
			"group_attributes": dict(self.group_attributes),
		}

	@classmethod
	def from_dict(cls, data: Mapping[str, Any]) -> "PublicInfo":
		attrs = data.get("group_attributes") or {}
		return cls(
			uid=str(data["uid"]),
			display_name=str(data.get("display_name") or ""),
			group_attributes={str(k): str(v) for k, v in dict(attrs).items()},
		)


@dataclass(slots=True, frozen=True)
class Profile:
	uid: str
	is_verified: bool = False
	display_name: str = ""
	group_attributes: Dict[str, str] = field(default_factory=dict)

	def public_info(self) -> PublicInfo:
		return PublicInfo(
			uid=self.uid,
			display_name=self.display_name,
			group_attributes=dict(self.group_attributes),
		)


class ProfileDirectory(Protocol):
	async def get_profile(self, uid: str) -> Profile:
		...


class StaticProfileDirectory:
	"""Directory over a fixed mapping; unknown uids are unverified."""

	def __init__(self, profiles: Optional[Mapping[str, Profile]] = None) -> None:
		self._profiles: Dict[str, Profile] = dict(profiles or {})

	def put(self, profile: Profile) -> None:
		self._profiles[profile.uid] = profile

	async def get_profile(self, uid: str) -> Profile:
		return self._profiles.get(uid) or Profile(uid=uid)


class StoreProfileDirectory:
	"""Reads ``users/<uid>`` rows written by the signup/verification service.

	Row fields follow the signup form: ``isVerified``, ``username``,
	``collegeName`` and ``gender``. Snake-case spellings are accepted too.
	"""

	_ATTRIBUTE_FIELDS = (("collegeName", "college"), ("college", "college"), ("gender", "gender"))

	def __init__(self, store: Store) -> None:
		self._store = store

	async def get_profile(self, uid: str) -> Profile:
		row = await self._store.get(user_key(uid))
		if not row:
			return Profile(uid=uid)
		attributes: Dict[str, str] = {}
		for source, target in self._ATTRIBUTE_FIELDS:
			value = row.get(source)
			if value and target not in attributes:
				attributes[target] = str(value)
		extra = row.get("group_attributes")
		if isinstance(extra, dict):
			attributes.update({str(k): str(v) for k, v in extra.items()})
		return Profile(
			uid=uid,
			is_verified=bool(row.get("isVerified", row.get("is_verified", False))),
			display_name=str(row.get("username") or row.get("display_name") or ""),
			group_attributes=attributes,
		)
