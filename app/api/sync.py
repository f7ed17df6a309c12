"""
Reconciliation endpoints

Manual sync triggers, conflict check/resolve, sync history and the automatic
sync schedule.
"""
from fastapi import APIRouter, HTTPException, Query

from app.config import get_settings, record_store_config
from app.connectors.record_store import RecordStoreClient
from app.scheduler import get_schedule, schedule_auto_sync
from app.services.exceptions import SyncInProgressError
from app.services.reconciliation_service import build_engine
from app.services.sync_history_service import SyncHistoryService
from app.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/full")
async def run_full_sync():
    """
    Sync customers, payments and commerce in one run.

    Returns 409 while another full sync is running.
    """
    try:
        return await build_engine().run_full_sync()
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        log.error(f"Full sync error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/customers")
async def sync_customers():
    """Refresh subscription status and mappings for every customer"""
    try:
        return await build_engine().sync_customers()
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        log.error(f"Customer sync error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/conflicts")
async def check_conflicts():
    try:
        return await build_engine().check_for_conflicts()
    except Exception as e:
        log.error(f"Conflict check error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/conflicts/resolve")
async def resolve_conflicts():
    try:
        return await build_engine().resolve_conflicts()
    except Exception as e:
        log.error(f"Conflict resolution error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/history")
async def get_sync_history(
    limit: int = Query(50, ge=1, le=500),
    service: str = Query(None, description="payments, commerce or all")
):
    try:
        store = RecordStoreClient(record_store_config())
        history = await SyncHistoryService(store).get_history(limit=limit, service=service)
        return {"history": history, "count": len(history)}
    except Exception as e:
        log.error(f"Sync history error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/schedule")
async def read_schedule():
    return get_schedule()


@router.put("/schedule")
async def update_schedule(
    interval_minutes: int = Query(None, ge=0, description="Minutes between runs; 0 disables")
):
    """
    Replace the automatic sync schedule.

    Example: PUT /sync/schedule?interval_minutes=30
    """
    if interval_minutes is None:
        interval_minutes = get_settings().auto_sync_interval_minutes
    return schedule_auto_sync(interval_minutes)
