"""
Escalation External Service Integrations
========================================

External services for the escalation module:
- YAML escalation policy with watchdog hot reload
- Domain event sinks (outbox table, webhook with circuit breaker)
- APScheduler for an optional in-process escalation sweep
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from src.core.exceptions import ConfigurationException, EventSinkException
from src.escalation.application.services import IEventSink, IPolicyProvider
from src.escalation.domain import DomainEvent, EscalationPolicy
from src.escalation.infrastructure.models import OutboxEventModel
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class PolicyFileHandler(FileSystemEventHandler):
    """Watchdog event handler for escalation policy file changes."""

    def __init__(self, policy_manager: "EscalationPolicyManager", policy_path: Path):
        self.policy_manager = policy_manager
        self.policy_path = policy_path
        super().__init__()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.policy_path.resolve():
            logger.info("Escalation policy file changed", extra={"path": event.src_path})
            self.policy_manager.reload()


class EscalationPolicyManager(IPolicyProvider):
    """
    Thread-safe escalation policy manager with hot-reload support.

    Uses watchdog to monitor file changes and reload the policy
    without restarting the service. A broken edit keeps the last good
    policy in place.
    """

    def __init__(self):
        self._policy: Optional[EscalationPolicy] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> EscalationPolicy:
        """
        Initial policy load.

        Raises:
            ConfigurationException: If the file exists but is invalid
        """
        self._path = Path(path)
        try:
            self._policy = self._load_from_file(self._path)
        except (yaml.YAMLError, ValidationError, TypeError) as e:
            raise ConfigurationException(
                f"Invalid escalation policy file: {self._path}", {"error": str(e)}
            ) from e
        return self._policy

    def _load_from_file(self, path: Path) -> EscalationPolicy:
        """Load and parse YAML policy file."""
        if not path.exists():
            logger.warning("Escalation policy file not found, using defaults", extra={"path": str(path)})
            return EscalationPolicy()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return EscalationPolicy(**data)

    def reload(self) -> bool:
        """Reload policy from file."""
        if self._path is None:
            return False

        try:
            new_policy = self._load_from_file(self._path)
            with self._lock:
                self._policy = new_policy
            logger.info("Escalation policy reloaded successfully")
            return True
        except Exception as e:
            logger.error("Failed to reload escalation policy", extra={"error": str(e)})
            return False

    def start_watching(self) -> None:
        """
        Start watching the policy file for changes.

        Skips watching if the file doesn't exist or inotify is unavailable
        (serverless and some container runtimes).
        """
        if self._path is None:
            raise RuntimeError("Policy not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "Policy file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = PolicyFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info("Started watching escalation policy", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static policy", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching the policy file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    def get_policy(self) -> EscalationPolicy:
        """Get current escalation policy."""
        with self._lock:
            if self._policy is None:
                raise RuntimeError("Escalation policy not loaded")
            return self._policy


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if self._clock() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        """Check if request should be allowed."""
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        """Record successful request."""
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        """Record failed request."""
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._failure_count >= self.failure_threshold or self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class WebhookEventSink(IEventSink):
    """
    Posts domain events as JSON to a webhook.

    Handles delivery with:
    - Circuit breaker to prevent cascade failures
    - Exponential backoff retry
    - Timeout handling
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        max_retries: int = 3,
        circuit_breaker: Optional[CircuitBreaker] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self._url = url
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def emit(self, event: DomainEvent) -> None:
        """
        Deliver one event.

        Raises:
            EventSinkException: If the circuit is open or every attempt failed
        """
        if not self._circuit_breaker.allow_request():
            raise EventSinkException(
                "Circuit breaker open, event not delivered",
                {"event_type": event.event_type, "ticket_id": event.ticket_id}
            )

        body = event.to_dict()
        last_error = None

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._url, json=body)

                if response.status_code < 300:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Event delivered",
                        extra={"event_type": event.event_type, "ticket_id": event.ticket_id}
                    )
                    return

                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "Event webhook returned non-2xx",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )

            except httpx.HTTPError as e:
                last_error = str(e)
                logger.error(
                    "Event webhook call failed",
                    extra={"error": str(e), "attempt": attempt + 1, "ticket_id": event.ticket_id}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(2 ** attempt)

        self._circuit_breaker.record_failure()
        raise EventSinkException(
            "Event delivery failed",
            {"event_type": event.event_type, "ticket_id": event.ticket_id, "error": last_error}
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class OutboxEventSink(IEventSink):
    """
    Writes events to the outbox table for a downstream notifier.

    Runs in its own session after the business transaction committed.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def emit(self, event: DomainEvent) -> None:
        async with self._session_maker() as session:
            session.add(OutboxEventModel(
                event_type=event.event_type,
                aggregate_type="ticket",
                aggregate_id=str(event.ticket_id),
                payload=event.to_dict(),
                status="pending",
                created_at=event.occurred_at,
            ))
            await session.commit()


class CompositeEventSink(IEventSink):
    """Fans an event out to several sinks; every sink gets a chance."""

    def __init__(self, sinks: Sequence[IEventSink]):
        self._sinks: List[IEventSink] = list(sinks)

    async def emit(self, event: DomainEvent) -> None:
        errors = []
        for sink in self._sinks:
            try:
                await sink.emit(event)
            except Exception as e:
                errors.append(f"{type(sink).__name__}: {e}")

        if errors:
            raise EventSinkException(
                "One or more event sinks failed",
                {"event_type": event.event_type, "errors": errors}
            )

    async def close(self) -> None:
        for sink in self._sinks:
            close = getattr(sink, "close", None)
            if close is not None:
                await close()


class SweepScheduler:
    """
    Wrapper for APScheduler for an in-process escalation sweep.

    Production relies on the cron endpoint; this is for local runs.
    """

    def __init__(self, interval_seconds: int = 300):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[object]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("Escalation scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="escalation_sweep",
            name="Escalation Sweep Job",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Escalation scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Escalation scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
