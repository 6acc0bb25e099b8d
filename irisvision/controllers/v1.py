from fastapi import APIRouter

from . import entitlements, history, scans

router = APIRouter(prefix="/v1")
router.include_router(scans.router)
router.include_router(history.router)
# quota and purchase verification
router.include_router(entitlements.router)
