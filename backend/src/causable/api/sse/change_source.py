"""Change sources: where "a span was written" signals enter the broadcaster.

Two implementations share one interface so the broadcaster and sessions do
not care which is deployed:

* ``DirectChangeSource`` - the write path calls ``on_span_available`` after
  its commit. Single-process deployments only.
* ``PostgresChangeSource`` - a dedicated asyncpg connection ``LISTEN``s on
  a notification channel fed by an insert trigger, so spans written by any
  process (or by hand in psql) reach this process's streams.

The Postgres variant owns its listening connection: it is established in
``start()`` before the app serves traffic, watched for termination, and
re-established with capped exponential backoff. After ``max_attempts``
consecutive failures the source reports ``degraded`` through the health
endpoint but keeps retrying; open streams stay up and keep-alives continue.
"""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import asyncpg
import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import text
from sqlalchemy.engine import make_url

from causable.spans.schemas import Span

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from causable.api.sse.broadcaster import EventBroadcaster

logger = structlog.get_logger()

STATUS_OK = "ok"
STATUS_CONNECTING = "connecting"
STATUS_DEGRADED = "degraded"
STATUS_STOPPED = "stopped"

DEFAULT_CHANNEL = "timeline_updates"

# Insert trigger feeding PostgresChangeSource. Idempotent. NOTIFY payloads
# are capped at 8000 bytes, so oversized rows are sent without their bulky
# columns.
NOTIFY_TRIGGER_SQL = (
    """
    CREATE OR REPLACE FUNCTION notify_timeline_update() RETURNS trigger AS $$
    DECLARE
        payload text := row_to_json(NEW)::text;
    BEGIN
        IF octet_length(payload) > 7900 THEN
            payload := json_build_object(
                'id', NEW.id, 'seq', NEW.seq, 'entity_type', NEW.entity_type,
                'who', NEW.who, 'did', NEW.did, 'this', NEW."this", 'at', NEW.at,
                'status', NEW.status, 'trace_id', NEW.trace_id, 'truncated', true
            )::text;
        END IF;
        PERFORM pg_notify('{channel}', payload);
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS timeline_update_notify ON {table}",
    """
    CREATE TRIGGER timeline_update_notify
        AFTER INSERT ON {table}
        FOR EACH ROW EXECUTE FUNCTION notify_timeline_update()
    """,
)

ConnectFn = Callable[[str], Awaitable[Any]]


class ChangeSource(ABC):
    """Feeds newly persisted spans into an ``EventBroadcaster``."""

    def __init__(self, broadcaster: EventBroadcaster) -> None:
        self._broadcaster = broadcaster
        self._status = STATUS_STOPPED

    @property
    def status(self) -> str:
        return self._status

    @property
    def healthy(self) -> bool:
        return self._status == STATUS_OK

    def on_span_available(self, span: Span) -> int:
        """Publish a durably written span. Returns the number of subscribers reached."""
        return self._broadcaster.publish(span)

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...


class DirectChangeSource(ChangeSource):
    """In-process source: the span write path calls ``on_span_available`` itself."""

    async def start(self) -> None:
        self._status = STATUS_OK
        logger.info("change_source_started", kind="direct")

    async def stop(self) -> None:
        self._status = STATUS_STOPPED


class PostgresChangeSource(ChangeSource):
    """Bridges Postgres ``NOTIFY`` payloads (JSON span rows) into the broadcaster."""

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        dsn: str,
        *,
        channel: str = DEFAULT_CHANNEL,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        probe_interval: float = 30.0,
        probe_timeout: float | None = None,
        connect: ConnectFn | None = None,
    ) -> None:
        super().__init__(broadcaster)
        self._dsn = dsn
        self._channel = channel
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._probe_interval = probe_interval
        self._probe_timeout = (
            probe_timeout if probe_timeout is not None else min(probe_interval, 10.0)
        )
        self._connect_fn: ConnectFn = connect or asyncpg.connect
        self._connection: Any = None
        self._consecutive_failures = 0
        self._lost = asyncio.Event()
        self._stopping = False
        self._supervisor: asyncio.Task[None] | None = None
        self._log = logger.bind(channel=channel)

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def connected(self) -> bool:
        return self._connection is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Establish the listening connection, then hand over to the supervisor.

        Gives up waiting after ``max_attempts`` tries so startup never hangs;
        the supervisor keeps retrying in the background.
        """
        if self._supervisor is not None:
            return
        self._stopping = False
        self._status = STATUS_CONNECTING
        await self._connect_with_retry(limit=self._max_attempts)
        self._supervisor = asyncio.get_running_loop().create_task(
            self._supervise(), name=f"change-source-{self._channel}"
        )

    async def stop(self) -> None:
        self._stopping = True
        self._lost.set()
        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None:
            supervisor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await supervisor
        await self._discard_connection()
        self._status = STATUS_STOPPED
        self._log.info("change_source_stopped")

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def handle_payload(self, payload: str) -> Span | None:
        """Parse one notification payload and publish it.

        Malformed payloads are logged and dropped; the channel stays up.
        """
        try:
            span = Span.model_validate_json(payload)
        except PydanticValidationError as exc:
            self._log.warning(
                "change_source_payload_invalid",
                error=str(exc),
                payload=payload[:200],
            )
            return None
        self.on_span_available(span)
        return span

    def _on_notification(self, _connection: Any, _pid: int, _channel: str, payload: str) -> None:
        self.handle_payload(payload)

    def _on_termination(self, _connection: Any) -> None:
        self._lost.set()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        connection = await self._connect_fn(self._dsn)
        try:
            connection.add_termination_listener(self._on_termination)
            await connection.add_listener(self._channel, self._on_notification)
        except Exception:
            await connection.close()
            raise
        self._connection = connection
        self._lost.clear()

    async def _connect_with_retry(self, limit: int | None = None) -> bool:
        attempts = 0
        while not self._stopping:
            attempts += 1
            try:
                await self._connect()
            except Exception as exc:
                self._record_failure(exc)
                if limit is not None and attempts >= limit:
                    return False
                await asyncio.sleep(self._backoff_delay(self._consecutive_failures))
                continue

            if self._consecutive_failures:
                self._log.info("change_source_recovered", failures=self._consecutive_failures)
            else:
                self._log.info("change_source_listening", kind="postgres")
            self._consecutive_failures = 0
            self._status = STATUS_OK
            return True
        return False

    def _record_failure(self, exc: BaseException) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures >= self._max_attempts:
            if self._status != STATUS_DEGRADED:
                self._log.error(
                    "change_source_degraded",
                    failures=self._consecutive_failures,
                    error=str(exc),
                )
            self._status = STATUS_DEGRADED
        else:
            self._status = STATUS_CONNECTING
            self._log.warning(
                "change_source_reconnecting",
                failures=self._consecutive_failures,
                error=str(exc),
            )

    def _backoff_delay(self, failures: int) -> float:
        return float(min(self._base_delay * 2 ** max(failures - 1, 0), self._max_delay))

    async def _supervise(self) -> None:
        while not self._stopping:
            if self._connection is None:
                await self._connect_with_retry()
                continue

            try:
                await asyncio.wait_for(self._lost.wait(), timeout=self._probe_interval)
            except asyncio.TimeoutError:
                if await self._probe():
                    continue
            if self._stopping:
                return

            self._log.warning("change_source_connection_lost")
            await self._discard_connection()
            self._status = STATUS_CONNECTING

    async def _probe(self) -> bool:
        connection = self._connection
        if connection is None or connection.is_closed():
            return False
        try:
            await asyncio.wait_for(connection.execute("SELECT 1"), timeout=self._probe_timeout)
        except asyncio.TimeoutError:
            # Half-open socket: a graceful close would hang too
            self._log.warning("change_source_probe_timed_out", timeout=self._probe_timeout)
            connection.terminate()
            return False
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            self._log.warning("change_source_probe_failed", error=str(exc))
            return False
        return True

    async def _discard_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None or connection.is_closed():
            return
        try:
            await connection.remove_listener(self._channel, self._on_notification)
            await connection.close(timeout=5)
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            self._log.warning("change_source_close_failed", error=str(exc))
            connection.terminate()


def listen_dsn(database_url: str) -> str:
    """Turn a SQLAlchemy ``postgresql+asyncpg://`` URL into a plain asyncpg DSN."""
    url = make_url(database_url).set(drivername="postgresql")
    return url.render_as_string(hide_password=False)


async def install_notify_trigger(
    engine: AsyncEngine,
    *,
    table: str = "universal_registry",
    channel: str = DEFAULT_CHANNEL,
) -> None:
    """Install the insert trigger that publishes each new row on ``channel``."""
    async with engine.begin() as conn:
        for statement in NOTIFY_TRIGGER_SQL:
            await conn.execute(text(statement.format(table=table, channel=channel)))
    logger.info("notify_trigger_installed", table=table, channel=channel)
