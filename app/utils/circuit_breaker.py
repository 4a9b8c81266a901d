"""
Circuit breaker for calendar connections.

Unlike an in-process breaker, the state lives on the nylas_connections row
so it survives between sync invocations. A connection that keeps failing at
the connection level (token refresh, event listing) is skipped for a
cool-down period instead of being retried on every sync.

States:
    closed    -> normal operation
    open      -> connection skipped until the open-state timeout elapses
    half-open -> next pass is a trial; success closes, failure re-opens
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict

from app import config
from app.calendar.models import CalendarConnection, CircuitState

logger = logging.getLogger(__name__)


class ConnectionCircuitBreaker:
    """
    Per-connection breaker persisted through the sync store.

    Usage:
        breaker = ConnectionCircuitBreaker(store)
        if await breaker.allow(connection):
            try:
                ...
                await breaker.record_success(connection)
            except CalendarSyncError as e:
                await breaker.record_failure(connection, e)
    """

    def __init__(
        self,
        store,
        failure_threshold: int = None,
        open_state_seconds: int = None,
        now: Callable[[], datetime] = None
    ):
        self.store = store
        self.failure_threshold = failure_threshold or config.CONNECTION_FAILURE_THRESHOLD
        self.open_state_timeout = timedelta(
            seconds=open_state_seconds if open_state_seconds is not None else config.CONNECTION_OPEN_STATE_SECONDS
        )
        self.now = now or (lambda: datetime.now(timezone.utc))

    def retry_at(self, connection: CalendarConnection) -> datetime:
        return (connection.circuit_last_tripped_at or self.now()) + self.open_state_timeout

    async def allow(self, connection: CalendarConnection) -> bool:
        """Check whether the connection may be synced now."""
        if connection.circuit_breaker_state != CircuitState.OPEN:
            return True

        tripped_at = connection.circuit_last_tripped_at
        if tripped_at is not None and self.now() - tripped_at < self.open_state_timeout:
            logger.info(
                f"[Circuit][Conn:{connection.id}] Circuit is OPEN. Skipping sync. "
                f"Will retry after {self.retry_at(connection).isoformat()}"
            )
            return False

        logger.info(f"[Circuit][Conn:{connection.id}] Timeout elapsed: OPEN -> HALF_OPEN")
        connection.circuit_breaker_state = CircuitState.HALF_OPEN
        await self._persist(connection, {'circuit_breaker_state': CircuitState.HALF_OPEN.value})
        return True

    async def record_success(self, connection: CalendarConnection) -> None:
        if connection.consecutive_failures == 0 and connection.circuit_breaker_state == CircuitState.CLOSED:
            return

        logger.info(f"[Circuit][Conn:{connection.id}] Sync successful. Resetting circuit to CLOSED.")
        connection.consecutive_failures = 0
        connection.circuit_breaker_state = CircuitState.CLOSED
        connection.last_error = None
        await self._persist(connection, {
            'consecutive_failures': 0,
            'circuit_breaker_state': CircuitState.CLOSED.value,
            'last_error': None,
        })

    async def record_failure(self, connection: CalendarConnection, error: Exception) -> None:
        failures = connection.consecutive_failures + 1
        updates: Dict[str, Any] = {
            'consecutive_failures': failures,
            'last_error': str(error),
        }

        if failures >= self.failure_threshold or connection.circuit_breaker_state == CircuitState.HALF_OPEN:
            logger.warning(
                f"[Circuit][Conn:{connection.id}] {failures} consecutive failures "
                f"(threshold {self.failure_threshold}). Opening circuit."
            )
            tripped_at = self.now()
            updates['circuit_breaker_state'] = CircuitState.OPEN.value
            updates['circuit_last_tripped_at'] = tripped_at
            connection.circuit_breaker_state = CircuitState.OPEN
            connection.circuit_last_tripped_at = tripped_at

        connection.consecutive_failures = failures
        connection.last_error = str(error)
        await self._persist(connection, updates)

    async def _persist(self, connection: CalendarConnection, updates: Dict[str, Any]) -> None:
        try:
            await self.store.update_connection_health(connection.id, updates)
        except Exception as e:
            # Breaker bookkeeping must not fail the sync itself
            logger.warning(f"[Circuit][Conn:{connection.id}] Failed to persist circuit state: {e}")
