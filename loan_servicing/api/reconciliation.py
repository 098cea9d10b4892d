"""
Failed callback review and replay
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .dependencies import ServicingSystem, get_system
from .schemas import FailedCallbackList, ReplayRequest


router = APIRouter()


@router.get("/failed-callbacks", response_model=FailedCallbackList)
async def list_failed_callbacks(
    include_resolved: bool = False,
    system: ServicingSystem = Depends(get_system)
):
    """Payments waiting for manual reconciliation"""
    entries = await system.callback_processor.list_failed_callbacks(include_resolved=include_resolved)
    return FailedCallbackList(count=len(entries), entries=entries)


@router.post("/failed-callbacks/replay")
async def replay_failed_callbacks(
    request: Optional[ReplayRequest] = None,
    system: ServicingSystem = Depends(get_system)
):
    """Re-run unresolved failed callbacks through matching and allocation"""
    limit = request.limit if request else None
    results = await system.callback_processor.replay_failed_callbacks(limit=limit)
    return {
        "replayed": len(results),
        "results": [
            {
                "trans_id": r.trans_id,
                "outcome": r.outcome.value,
                "error": r.error,
            }
            for r in results
        ],
    }
