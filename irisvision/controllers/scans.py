from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from irisvision.dependencies import Caller, ErrorResponse, get_engine, rate_limit
from irisvision.models import ErrorCode
from irisvision.services import ScanEngine
from irisvision.services.orchestrator import FailureReason

logger = logging.getLogger(__name__)

OPTIONAL_FILE = File(None)

router = APIRouter()

_FAILURE_STATUS = {
    FailureReason.QUOTA_EXCEEDED: 402,
    FailureReason.PAYLOAD_TOO_LARGE: 413,
    FailureReason.INVALID_IMAGE: 400,
}

_FAILURE_MESSAGE = {
    FailureReason.QUOTA_EXCEEDED: "weekly scan limit reached",
    FailureReason.PAYLOAD_TOO_LARGE: "image too large, please retake the photo",
    FailureReason.INVALID_IMAGE: "unsupported image",
}


class ScanRequestBase64(BaseModel):
    image_base64: str
    image_ref: str | None = None


class ScanResponse(BaseModel):
    scan_id: str
    state: str
    fallback: bool
    analysis: dict[str, Any]
    record_id: str | None = None
    pending_sync: bool = False
    created_at: datetime | None = None
    scans_used: int | None = None
    weekly_limit: int | None = None


def _bad_request(message: str, status: int = 400) -> JSONResponse:
    err = ErrorResponse(code=ErrorCode.BAD_REQUEST, message=message)
    return JSONResponse(status_code=status, content=err.model_dump())


def _decode_base64(raw: str) -> bytes:
    if raw.startswith("data:"):
        _, _, raw = raw.partition(",")
    return base64.b64decode(raw, validate=True)


@router.post(
    "/scans",
    response_model=ScanResponse,
    responses={
        400: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
    },
)
async def create_scan(
    request: Request,
    caller: Caller = Depends(rate_limit),
    engine: ScanEngine = Depends(get_engine),
    image: UploadFile | None = OPTIONAL_FILE,
):
    limit = engine.settings.max_upload_bytes
    image_ref: str | None = None
    if image:
        contents = await image.read(limit + 1)
        if len(contents) > limit:
            return _bad_request("upload too large", 413)
        image_ref = image.filename or None
    else:
        try:
            json_data = await request.json()
        except (json.JSONDecodeError, ValueError, RuntimeError):
            return _bad_request("invalid JSON")
        if not isinstance(json_data, dict):
            return _bad_request("invalid body")
        try:
            body = ScanRequestBase64(**json_data)
        except ValidationError as err:
            return _bad_request("; ".join(e.get("msg", "") for e in err.errors()))
        if len(body.image_base64) > ((limit + 2) // 3) * 4 + 64:
            return _bad_request("upload too large", 413)
        try:
            contents = _decode_base64(body.image_base64)
        except (binascii.Error, ValueError):
            return _bad_request("invalid base64")
        image_ref = body.image_ref

    if caller.claim is not None and caller.claim.is_active():
        await engine.entitlements.apply_entitlement(caller.identity, caller.claim)

    outcome = await engine.orchestrator.run(caller.identity, contents, image_ref=image_ref)
    if not outcome.succeeded:
        reason = outcome.reason or FailureReason.INVALID_IMAGE
        err = ErrorResponse(code=reason.value, message=_FAILURE_MESSAGE[reason])
        content: dict[str, Any] = err.model_dump()
        if reason is FailureReason.QUOTA_EXCEEDED:
            snapshot = await engine.entitlements.snapshot(caller.identity)
            content["limit"] = snapshot.weekly_limit
        return JSONResponse(status_code=_FAILURE_STATUS[reason], content=content)

    record = outcome.record
    entitlement = outcome.entitlement
    return ScanResponse(
        scan_id=outcome.scan_id,
        state=outcome.state.value,
        fallback=outcome.fallback,
        analysis=outcome.analysis or {},
        record_id=record.id if record else None,
        pending_sync=record.pending_sync if record else False,
        created_at=record.created_at if record else None,
        scans_used=entitlement.scans_used if entitlement else None,
        weekly_limit=entitlement.weekly_limit if entitlement else None,
    )
