"""
Sync History

Append-only audit trail of sync runs. A row is inserted when a run starts and
finalized exactly once, as completed (with details) or failed (with error).
"""
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from app.connectors.record_store import RecordStoreClient
from app.models.entities import Collections, SyncHistory, SyncStatus
from app.utils.helpers import utcnow_iso
from app.utils.logger import log


class SyncRun:
    """Handle for one in-flight history row"""

    def __init__(self, history: "SyncHistoryService", row: Dict[str, Any]):
        self._history = history
        self.row = row
        self.details: Optional[Dict[str, Any]] = None
        self.finalized = False

    @property
    def id(self) -> str:
        return self.row["id"]

    async def complete(self, details: Optional[Dict[str, Any]] = None) -> Dict:
        if self.finalized:
            raise RuntimeError(f"sync history {self.id} already finalized")
        self.finalized = True
        return await self._history.finalize(self.id, SyncStatus.COMPLETED, details=details)

    async def fail(self, error: str) -> Dict:
        if self.finalized:
            raise RuntimeError(f"sync history {self.id} already finalized")
        self.finalized = True
        return await self._history.finalize(self.id, SyncStatus.FAILED, error=error)


class SyncHistoryService:

    def __init__(self, store: RecordStoreClient):
        self.store = store

    async def start(self, service: str, sync_type: str) -> SyncRun:
        record = SyncHistory(service=service, type=sync_type, started_at=utcnow_iso())
        row = await self.store.create(Collections.SYNC_HISTORY, record.to_record())
        return SyncRun(self, row)

    async def finalize(
        self,
        history_id: str,
        status: SyncStatus,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None
    ) -> Dict:
        updates: Dict[str, Any] = {"status": status.value, "completed_at": utcnow_iso()}
        if details is not None:
            updates["details"] = details
        if error is not None:
            updates["error"] = error
        return await self.store.update(Collections.SYNC_HISTORY, history_id, updates)

    @asynccontextmanager
    async def track(self, service: str, sync_type: str):
        """
        Wrap a run in a history row.

        Usage:
            async with history.track("all", "full_sync") as run:
                run.details = {...}

        The row is completed with run.details on normal exit and failed with
        the error message when the body raises; the error is re-raised.
        """
        run = await self.start(service, sync_type)
        try:
            yield run
        except Exception as e:
            log.error(f"{service} {sync_type} failed: {str(e)}")
            await run.fail(str(e))
            raise
        if not run.finalized:
            await run.complete(run.details)

    async def get_history(self, limit: int = 50, service: Optional[str] = None) -> List[Dict]:
        filter = {"service": {"_eq": service}} if service else None
        return await self.store.list(Collections.SYNC_HISTORY, filter, sort="-started_at", limit=limit)
