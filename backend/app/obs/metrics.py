"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
	"messaging_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"messaging_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"messaging_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"messaging_socketio_events_total",
	"Socket.IO events emitted per namespace",
	["namespace", "event"],
)

MESSAGES_SENT = Counter(
	"messaging_messages_sent_total",
	"Messages persisted by type and result",
	["type", "result"],
)

SEND_ROLLBACKS = Counter(
	"messaging_optimistic_rollbacks_total",
	"Optimistic sends rolled back after a failed durable write",
)

CONVERSATIONS_CREATED = Counter(
	"messaging_conversations_created_total",
	"Conversations created or reused by find-or-create",
	["result"],
)

ACTIVE_SUBSCRIPTIONS = Gauge(
	"messaging_realtime_subscriptions",
	"Live per-conversation subscriptions",
)

REFETCHES = Counter(
	"messaging_realtime_refetch_total",
	"Full message list re-fetches triggered by change signals",
	["result"],
)

READ_UPDATES = Counter(
	"messaging_read_updates_total",
	"Messages flipped to read",
)

PARTICIPANT_LOOKUPS = Counter(
	"messaging_participant_lookups_total",
	"Participant cache resolutions by outcome",
	["outcome"],
)

DEPENDENCY_UP = Gauge(
	"messaging_dependency_up",
	"Whether a backing dependency answered its last health probe",
	["dependency"],
)

DEPENDENCY_LATENCY = Histogram(
	"messaging_dependency_probe_seconds",
	"Health probe latency per dependency",
	["dependency"],
	buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25),
)

def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)

def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()

def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()

def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()

def inc_message_sent(message_type: str, *, result: str = "ok") -> None:
	MESSAGES_SENT.labels(type=message_type, result=result).inc()

def inc_send_rollback() -> None:
	SEND_ROLLBACKS.inc()

def inc_conversation(result: str) -> None:
	CONVERSATIONS_CREATED.labels(result=result).inc()

def subscription_opened() -> None:
	ACTIVE_SUBSCRIPTIONS.inc()

def subscription_closed() -> None:
	ACTIVE_SUBSCRIPTIONS.dec()

def inc_refetch(result: str) -> None:
	REFETCHES.labels(result=result).inc()

def inc_read_updates(count: int) -> None:
	if count > 0:
		READ_UPDATES.inc(count)

def inc_participant_lookup(outcome: str) -> None:
	PARTICIPANT_LOOKUPS.labels(outcome=outcome).inc()

def mark_dependency(name: str, ok: bool, *, latency_seconds: float | None = None) -> None:
	DEPENDENCY_UP.labels(dependency=name).set(1 if ok else 0)
	if latency_seconds is not None:
		DEPENDENCY_LATENCY.labels(dependency=name).observe(latency_seconds)
