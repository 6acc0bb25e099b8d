from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from irisvision.config import Settings
from irisvision.models import Base, DeviceState

logger = logging.getLogger(__name__)


engine: Engine | None = None
local_engine: Engine | None = None
_session_factory: sessionmaker | None = None
_local_session_factory: sessionmaker | None = None


class _SessionWrapper:
    """Callable proxy returning sessions from the current factory."""

    def __init__(self, name: str, local: bool = False):
        self._name = name
        self._local = local

    def __call__(self, *args: Any, **kwargs: Any):
        factory = _local_session_factory if self._local else _session_factory
        if factory is None:
            raise RuntimeError(f"{self._name} not initialized")
        return factory(*args, **kwargs)


# Remote authoritative store
SessionLocal = _SessionWrapper("Database")
# Device-local state store
DeviceSession = _SessionWrapper("Device state store", local=True)


def _engine_kwargs(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": 20,
        "max_overflow": 0,
        "pool_recycle": 30,
        "pool_pre_ping": True,
    }


def init_db(cfg: Settings) -> None:
    """Create the remote engine and session factory."""
    global engine, _session_factory

    engine = create_engine(cfg.database_url, future=True, **_engine_kwargs(cfg.database_url))
    _session_factory = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
    )

    if cfg.db_create_all:
        Base.metadata.create_all(engine)


def init_local_state(cfg: Settings) -> None:
    """Create the device-local engine; the device table is created on demand."""
    global local_engine, _local_session_factory

    local_engine = create_engine(
        cfg.local_state_url, future=True, **_engine_kwargs(cfg.local_state_url)
    )
    _local_session_factory = sessionmaker(
        bind=local_engine,
        autoflush=False,
        autocommit=False,
        future=True,
    )
    # No migration tooling ships to devices
    Base.metadata.create_all(local_engine, tables=[DeviceState.__table__])
    logger.info("Device state store ready at %s", local_engine.url.render_as_string())
