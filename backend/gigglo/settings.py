"""Settings for the Gigglo roulette backend."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
	if env_names:
		alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
		return Field(default=default, validation_alias=alias)
	return Field(default=default)


class Settings(BaseSettings):
	redis_url: str = _env_field("redis://localhost:6379/0", "REDIS_URL")
	# "redis" for shared deployments, "memory" for a single-process dev server
	store_backend: str = _env_field("redis", "STORE_BACKEND")
	key_prefix: str = _env_field("gigglo", "KEY_PREFIX")
	http_host: str = _env_field("0.0.0.0", "HOST", "HTTP_HOST")
	http_port: int = _env_field(8000, "PORT", "HTTP_PORT")

	environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
	obs_enabled: bool = _env_field(True, "OBS_ENABLED")
	obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
	obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")
	service_name: str = _env_field("gigglo-roulette", "SERVICE_NAME")
	git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")
	cors_allow_origins: Any = _env_field((), "CORS_ALLOW_ORIGINS")
	obs_admin_token: str | None = _env_field(None, "OBS_ADMIN_TOKEN")
	obs_metrics_public: bool = _env_field(False, "OBS_METRICS_PUBLIC")

	# Matchmaking
	search_timeout_seconds: float = _env_field(30.0, "SEARCH_TIMEOUT_SECONDS")
	# Queue entries older than this are ignored by scans
	queue_stale_seconds: float = _env_field(30.0, "QUEUE_STALE_SECONDS")

	# Session countdown
	session_duration_seconds: int = _env_field(300, "SESSION_DURATION_SECONDS")
	session_extend_seconds: int = _env_field(300, "SESSION_EXTEND_SECONDS")
	low_time_threshold_seconds: int = _env_field(60, "LOW_TIME_THRESHOLD_SECONDS")
	timer_tick_seconds: float = _env_field(1.0, "TIMER_TICK_SECONDS")

	# Delays between a terminal event and the follow-up transition
	skip_rematch_delay_seconds: float = _env_field(1.0, "SKIP_REMATCH_DELAY_SECONDS")
	partner_skip_grace_seconds: float = _env_field(2.0, "PARTNER_SKIP_GRACE_SECONDS")
	partner_left_grace_seconds: float = _env_field(3.0, "PARTNER_LEFT_GRACE_SECONDS")
	# A partner record missing right after pairing is re-read once after this long
	partner_confirm_absent_seconds: float = _env_field(1.0, "PARTNER_CONFIRM_ABSENT_SECONDS")

	message_max_length: int = _env_field(200, "MESSAGE_MAX_LENGTH")
	reaction_max_length: int = _env_field(8, "REACTION_MAX_LENGTH")

	subscription_retry_limit: int = _env_field(3, "SUBSCRIPTION_RETRY_LIMIT")
	subscription_retry_backoff_seconds: float = _env_field(0.5, "SUBSCRIPTION_RETRY_BACKOFF_SECONDS")

	def is_prod(self) -> bool:
		return self.environment.lower() in ("prod", "production", "live")

	def is_dev(self) -> bool:
		return self.environment.lower() in ("dev", "development")

	model_config = SettingsConfigDict(
		env_prefix="",
		env_file=".env",
		case_sensitive=False,
		extra="ignore",
	)

	@field_validator("cors_allow_origins", mode="before")
	def _split_cors(cls, value):  # type: ignore[override]
		if value in (None, ""):
			return ()
		if isinstance(value, str):
			return tuple(part.strip() for part in value.split(",") if part.strip())
		if isinstance(value, (list, tuple, set)):
			return tuple(str(item).strip() for item in value if str(item).strip())
		return ()

	@field_validator("store_backend", mode="before")
	def _normalise_backend(cls, value):  # type: ignore[override]
		text = str(value or "redis").strip().lower()
		return text if text in ("redis", "memory") else "redis"


def _normalise_level(level: str) -> str:
	return level.upper()


settings = Settings()
settings.obs_log_level = _normalise_level(settings.obs_log_level)


__all__ = ["Settings", "settings"]
