import os
from contextlib import redirect_stderr, redirect_stdout
from io import StringIO
from pathlib import Path
from types import SimpleNamespace

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure tests run against SQLite when DATABASE_URL is not defined
os.environ.setdefault("DATABASE_URL", "sqlite:////tmp/irisvision_test.db")
os.environ.setdefault("LOCAL_STATE_URL", "sqlite:////tmp/irisvision_device_test.db")
os.environ.setdefault("OPENAI_API_KEY", "test")
os.environ.setdefault("APP_ENV", "development")

from fastapi.testclient import TestClient  # noqa: E402

from irisvision import dependencies  # noqa: E402
from irisvision.config import Settings  # noqa: E402
from irisvision.db import init_db, init_local_state  # noqa: E402
from irisvision.main import app  # noqa: E402
from irisvision.models import AppliedOp, Base, DeviceState, Entitlement, ScanHistory  # noqa: E402
from irisvision.services import build_engine  # noqa: E402
from irisvision.services.entitlements import EntitlementStore  # noqa: E402
from irisvision.services.history import HistoryReconciler  # noqa: E402
from irisvision.services.local_state import LocalStateStore  # noqa: E402
from tests.utils.fakes import FakeClock, FlakyRemote, StubAnalysis  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def apply_migrations():
    """Apply Alembic migrations before running tests."""
    cfg_path = Path(__file__).resolve().parent.parent / "alembic.ini"
    config = Config(str(cfg_path))
    stdout_buf, stderr_buf = StringIO(), StringIO()
    try:
        with redirect_stdout(stdout_buf), redirect_stderr(stderr_buf):
            command.upgrade(config, "head")
    except Exception as exc:
        print("Alembic upgrade failed:", exc)
        print("stdout:\n", stdout_buf.getvalue())
        print("stderr:\n", stderr_buf.getvalue())
        raise
    init_db(Settings())
    init_local_state(Settings())


@pytest.fixture(scope="session", autouse=True)
def remove_test_db():
    """Remove temporary SQLite databases after tests finish."""
    yield
    for var in ("DATABASE_URL", "LOCAL_STATE_URL"):
        db_url = os.environ.get(var)
        if db_url and db_url.startswith("sqlite:///"):
            db_path = Path(db_url.replace("sqlite:///", ""))
            if db_path.exists():
                db_path.unlink()


@pytest.fixture(scope="module")
def client(apply_migrations):
    """Yields a TestClient with lifespan events and a stubbed analysis service."""
    with TestClient(app) as client:
        app.state.engine = build_engine(
            Settings(), analysis=StubAnalysis(), upload_image=None
        )
        yield client


@pytest.fixture(autouse=True)
def mock_redis(monkeypatch):
    class _Pipe:
        def __init__(self, store):
            self.store = store
            self.ops = []

        def incr(self, key):
            self.ops.append(("incr", key))
            return self

        def expire(self, key, ttl):
            self.ops.append(("expire", key, ttl))
            return self

        async def execute(self):
            results = []
            for op in self.ops:
                if op[0] == "incr":
                    key = op[1]
                    self.store[key] = self.store.get(key, 0) + 1
                    results.append(self.store[key])
                else:
                    results.append(True)
            self.ops.clear()
            return results

    class _Redis:
        def __init__(self):
            self.store = {}

        def pipeline(self):
            return _Pipe(self.store)

    fake = _Redis()
    monkeypatch.setattr(dependencies, "redis_client", fake)
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stores(tmp_path, clock):
    """Fresh device and remote stores backed by throwaway SQLite files."""
    remote_engine = create_engine(f"sqlite:///{tmp_path / 'remote.db'}", future=True)
    Base.metadata.create_all(
        remote_engine,
        tables=[Entitlement.__table__, ScanHistory.__table__, AppliedOp.__table__],
    )
    device_engine = create_engine(f"sqlite:///{tmp_path / 'device.db'}", future=True)
    Base.metadata.create_all(device_engine, tables=[DeviceState.__table__])

    local = LocalStateStore(sessionmaker(bind=device_engine, future=True))
    remote = FlakyRemote(sessionmaker(bind=remote_engine, future=True))
    yield SimpleNamespace(
        local=local,
        remote=remote,
        entitlements=EntitlementStore(local, remote, clock=clock),
        history=HistoryReconciler(local, remote),
    )
    remote_engine.dispose()
    device_engine.dispose()
