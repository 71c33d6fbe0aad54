"""Task queue delivery endpoints.

Called by the task worker, not by clients, so they sit outside ``/api`` and
outside Basic auth. A configured shared secret must be echoed in the
``X-Task-Secret`` header.
"""

import json
import logging
import secrets
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from pillsync.adherence.verifier import check_missed_dose
from pillsync.api.deps import get_context
from pillsync.triggers.context import HandlerContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks")


def _first_str(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _secret_matches(provided: str | None, expected: str) -> bool:
    if not provided:
        return False
    # Bytes, so a non-ASCII header is a mismatch rather than a TypeError
    return secrets.compare_digest(provided.encode(), expected.encode())


async def _read_payload(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return payload


@router.post("/check-missed-dose")
async def check_missed_dose_task(
    request: Request,
    x_task_secret: str | None = Header(default=None),
    ctx: HandlerContext = Depends(get_context),
) -> dict[str, Any]:
    expected = ctx.settings.task_secret
    if expected and not _secret_matches(x_task_secret, expected):
        logger.warning("Rejected missed-dose task with bad secret")
        raise HTTPException(status_code=403, detail="Forbidden")

    payload = await _read_payload(request)
    device_id = _first_str(payload, "deviceId", "deviceID")
    patient_id = _first_str(payload, "userID", "userId")
    if not device_id or not patient_id:
        raise HTTPException(status_code=400, detail="Missing deviceId or userID")

    try:
        result = await run_in_threadpool(check_missed_dose, ctx, device_id, patient_id)
    except Exception as exc:
        logger.exception("Missed-dose check failed for %s / %s", device_id, patient_id)
        raise HTTPException(status_code=500, detail="Missed-dose check failed") from exc

    return {
        "status": str(result.outcome),
        "logPath": result.log_path,
        "caregivers": result.caregivers or [],
        "tokensAttempted": result.tokens_attempted,
    }
