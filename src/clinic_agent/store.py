"""
Appointment persistence.

Appointments are inserted into a Supabase `appointments` table through the
PostgREST endpoint. Inserts are fire-and-forget from the conversation's point of
view: `schedule_insert()` returns immediately and a failure is logged and
counted, never raised into the turn that triggered it.
"""

import asyncio
from typing import Any, Optional, Set

import httpx
import structlog

from src.clinic_agent.booking import AppointmentRecord
from src.clinic_agent.errors import PersistenceError
from src.clinic_agent.metrics import ServerMetrics

logger = structlog.get_logger(__name__)

APPOINTMENTS_TABLE = "appointments"


class AppointmentStore:
    """Base store. Subclasses implement `insert`."""

    def __init__(self, metrics: Optional[ServerMetrics] = None):
        self._metrics = metrics
        self._tasks: Set[asyncio.Task] = set()

    async def insert(self, record: AppointmentRecord) -> None:
        raise NotImplementedError

    def schedule_insert(self, record: AppointmentRecord) -> asyncio.Task:
        """Start an insert in the background and return its task."""
        task = asyncio.create_task(self._insert_logged(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _insert_logged(self, record: AppointmentRecord) -> bool:
        try:
            await self.insert(record)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._metrics:
                self._metrics.record_failure("persistence", error=str(e))
            logger.error(
                "Appointment save failed",
                service_type=record.service_type,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        if self._metrics:
            self._metrics.appointments_saved += 1
        logger.info(
            "Appointment saved",
            service_type=record.service_type,
            appointment_date=record.appointment_date,
            appointment_time=record.appointment_time,
        )
        return True

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def close(self) -> None:
        """Wait for in-flight inserts so shutdown does not drop bookings."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class NullAppointmentStore(AppointmentStore):
    """Used when Supabase is not configured; bookings are only logged."""

    async def insert(self, record: AppointmentRecord) -> None:
        logger.warning(
            "Persistence disabled, appointment not stored",
            service_type=record.service_type,
        )


class SupabaseAppointmentStore(AppointmentStore):
    """Inserts appointment rows through Supabase's REST API."""

    def __init__(
        self,
        url: str,
        key: str,
        *,
        timeout: float = 10.0,
        metrics: Optional[ServerMetrics] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(metrics=metrics)
        self._endpoint = f"{url.rstrip('/')}/rest/v1/{APPOINTMENTS_TABLE}"
        self._headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def insert(self, record: AppointmentRecord) -> None:
        payload: dict[str, Any] = record.model_dump(exclude_none=True)
        try:
            response = await self._get_client().post(
                self._endpoint,
                headers=self._headers,
                json=[payload],
            )
        except httpx.HTTPError as e:
            raise PersistenceError(f"Supabase request failed: {e}") from e

        if response.status_code >= 300:
            raise PersistenceError(
                f"Supabase insert returned {response.status_code}: {response.text[:200]}"
            )

    async def close(self) -> None:
        await super().close()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
