import json
import logging
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from risk_engine.core.config import settings
from risk_engine.core.errors import StorageError, StorageFullError
from risk_engine.database.db import SessionLocal
from risk_engine.models.models import StoredActivity, StoredAlert
from risk_engine.schemas.activity import CanonicalActivity
from risk_engine.schemas.alerts import Alert

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_ID_BATCH = 500


def _activity_columns(item: CanonicalActivity) -> Dict[str, Any]:
    return {
        "username": item.username,
        "timestamp": item.timestamp,
        "risk_score": item.risk_score,
        "severity": item.severity,
    }


def _alert_columns(item: Alert) -> Dict[str, Any]:
    return {
        "category": item.category,
        "severity": item.severity,
        "status": item.status,
        "assigned_to": item.assigned_to,
    }


class SqlAlchemyStore(Generic[T]):
    """
    Keyed object store over one table. Items are upserted by id, the full
    record lives in payload_json and a few columns are kept for querying.
    """

    def __init__(
        self,
        model,
        schema: Type[T],
        capacity: int,
        columns: Callable[[T], Dict[str, Any]],
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.model = model
        self.schema = schema
        self.capacity = capacity
        self.columns = columns
        self.session_factory = session_factory

    def _serialize(self, item: T) -> str:
        return json.dumps(item.model_dump(by_alias=True), sort_keys=True, default=str)

    def get_all(self) -> List[T]:
        db = self.session_factory()
        try:
            rows = db.query(self.model).order_by(self.model.id.asc()).all()
            return [self.schema.model_validate(json.loads(row.payload_json)) for row in rows]
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to read {self.model.__tablename__}: {exc}") from exc
        finally:
            db.close()

    def get(self, record_id: str) -> Optional[T]:
        db = self.session_factory()
        try:
            row = db.query(self.model).filter(self.model.record_id == record_id).first()
            return self.schema.model_validate(json.loads(row.payload_json)) if row else None
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to read {self.model.__tablename__}: {exc}") from exc
        finally:
            db.close()

    def count(self) -> int:
        db = self.session_factory()
        try:
            return db.query(self.model).count()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to count {self.model.__tablename__}: {exc}") from exc
        finally:
            db.close()

    def put_all(self, items: Iterable[T]) -> int:
        """
        Upsert items. When the table would exceed capacity the items that fit
        are committed and StorageFullError reports the rest.
        """
        items = list(items)
        if not items:
            return 0
        db = self.session_factory()
        written = 0
        rejected = 0
        try:
            ids = list(dict.fromkeys(item.id for item in items))
            existing = {}
            # keep IN clauses under the sqlite bound parameter limit
            for start in range(0, len(ids), _ID_BATCH):
                batch = ids[start:start + _ID_BATCH]
                for row in db.query(self.model).filter(self.model.record_id.in_(batch)).all():
                    existing[row.record_id] = row
            available = self.capacity - db.query(self.model).count()
            for item in items:
                row = existing.get(item.id)
                if row is not None:
                    row.payload_json = self._serialize(item)
                    for key, value in self.columns(item).items():
                        setattr(row, key, value)
                    written += 1
                    continue
                if available <= 0:
                    rejected += 1
                    continue
                row = self.model(record_id=item.id, payload_json=self._serialize(item), **self.columns(item))
                db.add(row)
                existing[item.id] = row
                available -= 1
                written += 1
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("store write failed", extra={"table": self.model.__tablename__})
            raise StorageError(f"failed to write {self.model.__tablename__}: {exc}") from exc
        finally:
            db.close()

        if rejected:
            logger.warning(
                "store capacity reached",
                extra={"table": self.model.__tablename__, "written": written, "rejected": rejected},
            )
            raise StorageFullError(written=written, rejected=rejected, capacity=self.capacity)
        return written

    def clear(self) -> int:
        db = self.session_factory()
        try:
            deleted = db.query(self.model).delete()
            db.commit()
            return deleted
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"failed to clear {self.model.__tablename__}: {exc}") from exc
        finally:
            db.close()


def alert_store(session_factory: Callable[[], Session] = SessionLocal, capacity: Optional[int] = None) -> SqlAlchemyStore[Alert]:
    return SqlAlchemyStore(
        StoredAlert,
        Alert,
        capacity if capacity is not None else settings.ALERT_STORE_CAPACITY,
        _alert_columns,
        session_factory,
    )


def activity_store(session_factory: Callable[[], Session] = SessionLocal, capacity: Optional[int] = None) -> SqlAlchemyStore[CanonicalActivity]:
    return SqlAlchemyStore(
        StoredActivity,
        CanonicalActivity,
        capacity if capacity is not None else settings.ACTIVITY_STORE_CAPACITY,
        _activity_columns,
        session_factory,
    )
