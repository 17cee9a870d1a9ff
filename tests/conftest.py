"""
Shared fixtures: an isolated in-memory database, stores, a fixed clock and
activity builders.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

# keep the app module's own engine away from the working directory
os.environ.setdefault("DATABASE_URL", "sqlite:///" + os.path.join(tempfile.mkdtemp(), "risk_engine_test.db"))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from risk_engine.database.db import init_db
from risk_engine.database.store import activity_store, alert_store
from risk_engine.schemas.activity import CanonicalActivity
from risk_engine.services.alert_manager import AlertManager

FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def alerts(session_factory):
    return alert_store(session_factory)


@pytest.fixture
def activities_store(session_factory):
    return activity_store(session_factory)


@pytest.fixture
def manager(alerts, clock):
    return AlertManager(alerts, clock=clock)


def make_activity(index, username="alice", risk=300.0, day=0, hour=10, integration="email", **extra):
    moment = datetime(2024, 1, 1, hour, 0, tzinfo=timezone.utc) + timedelta(days=day, minutes=index % 60)
    fields = {
        "id": f"act-{index}",
        "user_id": username,
        "username": username,
        "timestamp": moment.isoformat(),
        "hour": moment.hour,
        "integration": integration,
        "integration_source": integration,
        "activity": extra.pop("activity", "File Download"),
        "risk_score": risk,
    }
    fields.update(extra)
    return CanonicalActivity(**fields)


@pytest.fixture
def activity_factory():
    return make_activity


@pytest.fixture
def mixed_activities():
    """Sixty activities over five users with a few obvious outliers."""
    items = []
    users = ["alice", "bob", "carol", "dave", "erin"]
    for i in range(60):
        user = users[i % len(users)]
        risk = 200.0 + (i % 7) * 50
        extra = {}
        if user == "erin" and i % 2 == 0:
            risk = 2400.0
            extra["policies_breached"] = {"pii": ["ssn", "dob"], "financial": True}
        items.append(
            make_activity(
                i,
                username=user,
                risk=risk,
                day=i % 10,
                hour=2 if user == "erin" else 9 + (i % 8),
                integration=["email", "cloud", "usb", "file"][i % 4],
                **extra,
            )
        )
    return items
