import json

import anyio
import httpx
import pytest
from sqlalchemy import select

from src.config import EventType
from src.core.exceptions import ConfigurationException, EventSinkException
from src.escalation.domain import DomainEvent
from src.escalation.infrastructure import (
    CircuitBreaker,
    CompositeEventSink,
    EscalationPolicyManager,
    OutboxEventModel,
    OutboxEventSink,
    SweepScheduler,
    WebhookEventSink,
)
from src.escalation.infrastructure.external import CircuitState

from tests.conftest import MONDAY_9AM, FailingEventSink, RecordingEventSink

WEBHOOK_URL = "https://hooks.campus.test/escalations"


def make_event(**payload):
    return DomainEvent(
        event_type=EventType.TICKET_ESCALATED,
        ticket_id=42,
        payload=payload or {"escalation_level": 1},
        occurred_at=MONDAY_9AM,
    )


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


class TestPolicyManager:
    def test_missing_file_falls_back_to_defaults(self, tmp_path):
        manager = EscalationPolicyManager()
        policy = manager.load(tmp_path / "absent.yaml")
        assert policy.escalation_bonus_hours == 48
        assert manager.get_policy() is policy

    def test_loads_values_from_yaml(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("escalation_bonus_hours: 24\nweekend_days: [4, 5]\n")

        policy = EscalationPolicyManager().load(path)

        assert policy.escalation_bonus_hours == 24
        assert policy.weekend_days == [4, 5]
        assert policy.extension_escalation_thresholds == [3, 5, 7]

    def test_invalid_file_is_a_configuration_error(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("weekend_days: [9]\n")

        with pytest.raises(ConfigurationException):
            EscalationPolicyManager().load(path)

    def test_reload_keeps_last_good_policy(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("escalation_bonus_hours: 24\n")
        manager = EscalationPolicyManager()
        manager.load(path)

        path.write_text("escalation_bonus_hours: 12\n")
        assert manager.reload() is True
        assert manager.get_policy().escalation_bonus_hours == 12

        path.write_text("escalation_bonus_hours: [not, a, number\n")
        assert manager.reload() is False
        assert manager.get_policy().escalation_bonus_hours == 12

    def test_must_be_loaded_first(self):
        manager = EscalationPolicyManager()
        assert manager.reload() is False
        assert not manager.is_watching
        with pytest.raises(RuntimeError):
            manager.get_policy()
        with pytest.raises(RuntimeError):
            manager.start_watching()

    def test_watching_a_missing_file_is_skipped(self, tmp_path):
        manager = EscalationPolicyManager()
        manager.load(tmp_path / "absent.yaml")
        manager.start_watching()
        assert not manager.is_watching
        manager.stop_watching()


class TestCircuitBreaker:
    def test_opens_after_threshold_and_recovers(self):
        clock = FakeMonotonic()
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30, clock=clock)

        breaker.record_failure()
        assert breaker.allow_request()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

        clock.value += 30
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_failure_while_half_open_reopens(self):
        clock = FakeMonotonic()
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10, clock=clock)
        breaker.record_failure()
        clock.value += 10
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN


class TestWebhookEventSink:
    def test_posts_event_as_json(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202)

        async def _run():
            client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            sink = WebhookEventSink(WEBHOOK_URL, http_client=client)
            await sink.emit(make_event(escalation_level=2))
            await sink.close()

        anyio.run(_run)

        [request] = requests
        assert str(request.url) == WEBHOOK_URL
        body = json.loads(request.content)
        assert body["event_type"] == EventType.TICKET_ESCALATED
        assert body["ticket_id"] == 42
        assert body["payload"] == {"escalation_level": 2}
        assert body["occurred_at"] == MONDAY_9AM.isoformat()

    def test_retries_then_succeeds(self):
        responses = iter([httpx.Response(503), httpx.Response(200)])

        def handler(request: httpx.Request) -> httpx.Response:
            return next(responses)

        async def _run():
            client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            breaker = CircuitBreaker(failure_threshold=1)
            sink = WebhookEventSink(WEBHOOK_URL, max_retries=2, circuit_breaker=breaker, http_client=client)
            await sink.emit(make_event())
            assert breaker.state == CircuitState.CLOSED

        anyio.run(_run)

    def test_failure_raises_and_trips_the_breaker(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        async def _run():
            client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60, clock=FakeMonotonic())
            sink = WebhookEventSink(WEBHOOK_URL, max_retries=1, circuit_breaker=breaker, http_client=client)

            with pytest.raises(EventSinkException, match="Event delivery failed"):
                await sink.emit(make_event())
            assert breaker.state == CircuitState.OPEN

            with pytest.raises(EventSinkException, match="Circuit breaker open"):
                await sink.emit(make_event())

        anyio.run(_run)
        assert len(calls) == 1

    def test_transport_errors_are_wrapped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async def _run():
            client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            sink = WebhookEventSink(WEBHOOK_URL, max_retries=1, http_client=client)
            with pytest.raises(EventSinkException) as exc_info:
                await sink.emit(make_event())
            assert "connection refused" in exc_info.value.details["error"]

        anyio.run(_run)


def test_outbox_sink_writes_pending_rows(session_maker):
    async def _run():
        await OutboxEventSink(session_maker).emit(make_event(reason="Manual escalation"))

        async with session_maker() as session:
            rows = (await session.execute(select(OutboxEventModel))).scalars().all()

        [row] = rows
        assert row.event_type == EventType.TICKET_ESCALATED
        assert row.aggregate_type == "ticket"
        assert row.aggregate_id == "42"
        assert row.status == "pending"
        assert row.payload["payload"] == {"reason": "Manual escalation"}

    anyio.run(_run)


def test_composite_sink_delivers_to_every_sink():
    recording = RecordingEventSink()
    failing = FailingEventSink()
    composite = CompositeEventSink([failing, recording])

    async def _run():
        with pytest.raises(EventSinkException) as exc_info:
            await composite.emit(make_event())
        assert exc_info.value.details["errors"] == ["FailingEventSink: Event Sink: webhook down"]
        await composite.close()

    anyio.run(_run)
    assert len(recording.events) == 1
    assert failing.calls == 1


def test_sweep_scheduler_start_and_stop():
    calls = []

    async def job():
        calls.append(1)

    async def _run():
        scheduler = SweepScheduler(interval_seconds=3600)
        await scheduler.start(job)
        assert scheduler.is_running
        await scheduler.start(job)
        await scheduler.stop()
        assert not scheduler.is_running

    anyio.run(_run)
    assert calls == []
