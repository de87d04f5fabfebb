"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

QUEUE_JOINS = Counter(
	"gigglo_queue_joins_total",
	"Queue entries written by searching clients",
)

QUEUE_SCANS = Histogram(
	"gigglo_queue_scan_candidates",
	"Fresh candidates returned per queue scan",
	buckets=(0, 1, 2, 5, 10, 25, 50, 100),
)

MATCHES_CREATED = Counter(
	"gigglo_matches_created_total",
	"Pairings written by a matchmaker",
)

MATCH_WRITE_FAILURES = Counter(
	"gigglo_match_write_failures_total",
	"Failed writes while creating a pairing",
	["target"],
)

SEARCH_TIMEOUTS = Counter(
	"gigglo_search_timeouts_total",
	"Searches abandoned because no partner arrived in time",
)

SESSIONS_ENDED = Counter(
	"gigglo_sessions_ended_total",
	"Matched sessions ended, by reason",
	["reason"],
)

GHOST_MATCHES = Counter(
	"gigglo_ghost_matches_total",
	"Sessions abandoned because the partner record pointed elsewhere",
)

SUBSCRIPTION_ERRORS = Counter(
	"gigglo_subscription_errors_total",
	"Live watch failures, by watched resource",
	["resource"],
)

MESSAGES_SENT = Counter(
	"gigglo_messages_sent_total",
	"Messages appended to rooms, by kind",
	["kind"],
)

CONTROLLERS = Gauge(
	"gigglo_session_controllers",
	"Live session controllers per state",
	["state"],
)

SOCKET_CLIENTS = Gauge(
	"gigglo_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"gigglo_socketio_events_total",
	"Socket.IO events handled per namespace",
	["namespace", "event"],
)

STORE_UP = Gauge(
	"gigglo_store_up",
	"Store readiness (1 ok, 0 failing)",
)

STORE_LATENCY = Histogram(
	"gigglo_store_ping_seconds",
	"Store ping latency in seconds",
	buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25),
)


def inc_queue_join() -> None:
	QUEUE_JOINS.inc()


def observe_queue_scan(candidates: int) -> None:
	QUEUE_SCANS.observe(candidates)


def inc_match_created() -> None:
	MATCHES_CREATED.inc()


def inc_match_write_failure(target: str) -> None:
	MATCH_WRITE_FAILURES.labels(target=target).inc()


def inc_search_timeout() -> None:
	SEARCH_TIMEOUTS.inc()


def inc_session_ended(reason: str) -> None:
	SESSIONS_ENDED.labels(reason=reason).inc()


def inc_ghost_match() -> None:
	GHOST_MATCHES.inc()


def inc_subscription_error(resource: str) -> None:
	SUBSCRIPTION_ERRORS.labels(resource=resource).inc()


def inc_message_sent(kind: str) -> None:
	MESSAGES_SENT.labels(kind=kind).inc()


def controller_state_changed(previous: str | None, current: str | None) -> None:
	if previous:
		CONTROLLERS.labels(state=previous).dec()
	if current:
		CONTROLLERS.labels(state=current).inc()


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def mark_store(ok: bool, *, latency_seconds: float | None = None) -> None:
	STORE_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		STORE_LATENCY.observe(latency_seconds)
