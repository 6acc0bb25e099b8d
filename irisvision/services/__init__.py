from __future__ import annotations

from dataclasses import dataclass

from irisvision.config import Settings

from .analysis import build_analysis_client
from .entitlements import EntitlementStore
from .history import HistoryReconciler
from .image_packager import ImagePackager
from .local_state import LocalStateStore
from .orchestrator import ScanOrchestrator
from .remote_store import RemoteStore
from .retry_policy import RetryPolicy
from .storage import upload_scan_image


@dataclass
class ScanEngine:
    """The explicitly composed services behind the HTTP surface."""

    settings: Settings
    local: LocalStateStore
    entitlements: EntitlementStore
    history: HistoryReconciler
    orchestrator: ScanOrchestrator
    billing_policy: RetryPolicy


def build_engine(
    cfg: Settings, *, local=None, remote=None, analysis=None, upload_image=upload_scan_image
) -> ScanEngine:
    local = local or LocalStateStore()
    remote = remote or RemoteStore()
    entitlements = EntitlementStore.from_settings(cfg, local, remote)
    history = HistoryReconciler.from_settings(cfg, local, remote)
    orchestrator = ScanOrchestrator(
        entitlements,
        history,
        ImagePackager.from_settings(cfg),
        analysis or build_analysis_client(cfg),
        RetryPolicy(cfg.effective_analysis_timeout, name="analysis"),
        upload_image=upload_image,
    )
    return ScanEngine(
        settings=cfg,
        local=local,
        entitlements=entitlements,
        history=history,
        orchestrator=orchestrator,
        billing_policy=RetryPolicy(cfg.billing_timeout_s, name="billing"),
    )


__all__ = ["ScanEngine", "build_engine"]
