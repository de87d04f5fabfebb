"""Read-only identity lookups consumed by matchmaking."""

from .directory import (
	Profile,
	ProfileDirectory,
	PublicInfo,
	StaticProfileDirectory,
	StoreProfileDirectory,
)

__all__ = [
	"Profile",
	"ProfileDirectory",
	"PublicInfo",
	"StaticProfileDirectory",
	"StoreProfileDirectory",
]
