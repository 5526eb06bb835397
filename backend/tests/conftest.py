import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import jwt
import pytest
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.visitor_tracker.database import build_engine, init_db  # noqa: E402  pylint: disable=wrong-import-position

SITE_SECRET = "site-secret-key-for-visitor-tracker-tests-0001"
SESSION_SECRET = "tgfg-session-secret-for-visitor-tracker-tests"


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'events.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


def build_admin_token(
    secret=SITE_SECRET,
    *,
    subject="admin",
    capabilities=("manage_options",),
    lifetime_seconds=300,
):
    now = datetime.now(timezone.utc)
    payload = {"exp": now + timedelta(seconds=lifetime_seconds)}
    if subject is not None:
        payload["sub"] = subject
    if capabilities is not None:
        payload["capabilities"] = list(capabilities)
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {build_admin_token()}"}


@pytest.fixture
def make_admin_token():
    return build_admin_token
