import os
import tempfile

os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from auth import TokenService  # noqa: E402
from database import build_engine, create_schema  # noqa: E402


@pytest.fixture
def tokens() -> TokenService:
    return TokenService("test-secret", access_ttl_secs=60, refresh_ttl_secs=600)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)
    create_schema(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def client(session_factory, tokens):
    from main import app, get_db, get_token_service

    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_token_service] = lambda: tokens
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
