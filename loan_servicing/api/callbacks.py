"""
Mobile-money payment webhook
"""

import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from .dependencies import ServicingSystem, get_system

router = APIRouter()

ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}
INVALID = {"ResultCode": 1, "ResultDesc": "Invalid data"}


@router.post("/callback")
async def mpesa_callback(
    request: Request,
    system: ServicingSystem = Depends(get_system)
):
    """
    C2B confirmation callback

    Answers 400 only when the payload is unusable (no transaction id, or an
    amount that is not a number). Everything else is acknowledged with
    ResultCode 0 so the gateway does not keep redelivering; payments that
    could not be applied wait in the failed callbacks holding area.
    """
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None

    if not isinstance(payload, dict):
        await system.callback_processor.reject_unreadable(body.decode("utf-8", errors="replace"))
        return JSONResponse(status_code=400, content=INVALID)

    result = await system.callback_processor.handle_callback(payload)
    if not result.accepted:
        return JSONResponse(status_code=400, content=INVALID)
    return JSONResponse(status_code=200, content=ACCEPTED)
