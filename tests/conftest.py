"""
Shared pytest fixtures: in-memory SQLite store, fake collaborators, TestClient.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from confirmit.main import app
from confirmit.receipts.database import Base
from confirmit.receipts.models import ReceiptModel  # noqa: F401  register models
from confirmit.receipts.pipeline import ReceiptPipeline
from confirmit.receipts.pipeline.store import SqlReceiptStore
from confirmit.receipts.routers.receipts import get_pipeline

from tests.fakes import FakeAnalyzer, FakeBlobStorage, FakeLedger, RecordingChannel

# StaticPool ensures all connections share the same in-memory database
_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_Session = sessionmaker(autocommit=False, autoflush=False, bind=_ENGINE)


@pytest.fixture(autouse=True)
def _reset_tables():
    Base.metadata.create_all(bind=_ENGINE)
    yield
    Base.metadata.drop_all(bind=_ENGINE)


@pytest.fixture()
def session_factory():
    return _Session


@pytest.fixture()
def store():
    return SqlReceiptStore(_Session)


@pytest.fixture()
def storage():
    return FakeBlobStorage()


@pytest.fixture()
def analyzer():
    return FakeAnalyzer()


@pytest.fixture()
def ledger():
    return FakeLedger()


@pytest.fixture()
def channel():
    return RecordingChannel()


@pytest.fixture()
def pipeline(store, storage, analyzer, ledger, channel):
    return ReceiptPipeline(
        store=store,
        storage=storage,
        analyzer=analyzer,
        ledger=ledger,
        channel=channel,
    )


@pytest.fixture()
def client(pipeline):
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    with TestClient(app) as c:
        yield c
        c.portal.call(pipeline.shutdown, 1.0)
    app.dependency_overrides.clear()
