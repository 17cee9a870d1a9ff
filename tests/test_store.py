"""
Durable store tests.
"""

import pytest
from sqlalchemy.exc import OperationalError

from risk_engine.core.errors import StorageError, StorageFullError
from risk_engine.database.store import activity_store


class TestActivityStore:
    def test_put_and_read_back(self, activities_store, activity_factory):
        items = [activity_factory(i, risk=float(i * 100)) for i in range(5)]
        assert activities_store.put_all(items) == 5
        loaded = activities_store.get_all()
        assert [a.id for a in loaded] == [a.id for a in items]
        assert loaded[3] == items[3]
        assert activities_store.get("act-2").risk_score == 200.0
        assert activities_store.get("missing") is None

    def test_upsert_by_id(self, activities_store, activity_factory):
        activities_store.put_all([activity_factory(1, risk=100.0)])
        activities_store.put_all([activity_factory(1, risk=2500.0)])
        assert activities_store.count() == 1
        assert activities_store.get("act-1").severity == "critical"

    def test_capacity_writes_what_fits(self, session_factory, activity_factory):
        store = activity_store(session_factory, capacity=3)
        with pytest.raises(StorageFullError) as info:
            store.put_all([activity_factory(i) for i in range(5)])
        assert (info.value.written, info.value.rejected, info.value.capacity) == (3, 2, 3)
        assert store.count() == 3
        # updates to stored items still fit
        assert store.put_all([activity_factory(0, risk=999.0)]) == 1

    def test_clear(self, activities_store, activity_factory):
        activities_store.put_all([activity_factory(i) for i in range(4)])
        assert activities_store.clear() == 4
        assert activities_store.get_all() == []

    def test_database_errors_are_wrapped(self, activities_store, activity_factory, monkeypatch):
        def failing_session():
            raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

        session = activities_store.session_factory()
        monkeypatch.setattr(session, "commit", failing_session)
        activities_store.session_factory = lambda: session
        with pytest.raises(StorageError):
            activities_store.put_all([activity_factory(1)])

    def test_many_ids_in_one_write(self, activities_store, activity_factory):
        items = [activity_factory(i) for i in range(1200)]
        assert activities_store.put_all(items) == 1200
        assert activities_store.put_all(items[:700]) == 700
        assert activities_store.count() == 1200
