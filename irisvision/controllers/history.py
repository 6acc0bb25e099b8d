from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from irisvision.dependencies import Caller, ErrorResponse, get_engine, rate_limit
from irisvision.services import ScanEngine
from irisvision.services.records import HistoryRecord
from irisvision.services.storage import get_public_url

logger = logging.getLogger(__name__)

router = APIRouter()


class HistoryItem(BaseModel):
    id: str
    image_ref: str
    analysis: dict[str, Any]
    created_at: datetime
    pending_sync: bool = False
    image_url: str | None = None


def _item(record: HistoryRecord) -> HistoryItem:
    # uploaded images are referenced by object key
    url = get_public_url(record.image_ref) if record.image_ref.startswith("iris-scans/") else None
    return HistoryItem(**record.model_dump(), image_url=url)


@router.get(
    "/history",
    response_model=List[HistoryItem],
    responses={401: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
async def list_history(
    caller: Caller = Depends(rate_limit),
    engine: ScanEngine = Depends(get_engine),
):
    records = await engine.history.list(caller.identity)
    return [_item(record) for record in records]


@router.delete(
    "/history",
    status_code=204,
    responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def clear_history(
    caller: Caller = Depends(rate_limit),
    engine: ScanEngine = Depends(get_engine),
):
    await engine.history.clear(caller.identity)
    logger.info("History cleared for %s", caller.identity.owner_key)
    return Response(status_code=204)
