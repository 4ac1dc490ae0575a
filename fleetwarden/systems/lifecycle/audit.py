"""
FleetWarden: Lifecycle Audit Trail

Every lifecycle call is permanently recorded, whatever its outcome:
SUCCESS, FAILED or REJECTED. The record is the operator's answer to
"who did what to which service, when, why, and what happened".

Records go to the FleetStore with retry. If the store keeps failing, the
full record is emitted to the structured log instead so it is never
silently dropped. Audit records are never purged by retention.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from fleetwarden.systems.fleet.store import PersistenceError, persist_with_retry
from fleetwarden.systems.lifecycle.types import AuditRecord, LifecycleAction

if TYPE_CHECKING:
    from fleetwarden.systems.fleet.store import FleetStore

logger = structlog.get_logger()


class AuditTrail:
    def __init__(self, store: FleetStore, persist_attempts: int = 2) -> None:
        self._store = store
        self._persist_attempts = persist_attempts
        self._logger = logger.bind(system="lifecycle", component="audit_trail")
        self._records_written: int = 0
        self._records_failed: int = 0

    async def record(self, record: AuditRecord) -> bool:
        """
        Write one audit record. Returns True if it reached the store.

        Never raises: a record the store refuses lands in the log.
        """
        self._logger.info(
            "action_audit",
            audit_id=record.id,
            service_id=record.service_id,
            action=record.action.value,
            status=record.status.value,
            principal=record.principal,
            automated=record.automated,
            duration_ms=record.duration_ms,
            risk_level=record.risk_level,
        )
        try:
            await persist_with_retry(
                lambda: self._store.append_audit(record),
                attempts=self._persist_attempts,
                what="append_audit",
                service_id=record.service_id,
                audit_id=record.id,
            )
        except PersistenceError as exc:
            self._records_failed += 1
            self._logger.error(
                "audit_record_fallback",
                error=str(exc),
                record=record.model_dump(mode="json"),
            )
            return False
        self._records_written += 1
        return True

    async def history(
        self,
        service_id: str,
        since: datetime | None = None,
        action: LifecycleAction | None = None,
    ) -> list[AuditRecord]:
        """Audit records for one service, newest first."""
        records = await self._store.audit_records(service_id, since=since, action=action)
        return sorted(records, key=lambda r: r.started_at, reverse=True)

    @property
    def stats(self) -> dict[str, int]:
        return {
            "records_written": self._records_written,
            "records_failed": self._records_failed,
        }
