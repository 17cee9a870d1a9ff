from sqlalchemy import Column, Integer, String, Float, DateTime, Text
from sqlalchemy.sql import func
from risk_engine.database.db import Base


class StoredActivity(Base):
    __tablename__ = "stored_activities"

    id = Column(Integer, primary_key=True, index=True)
    record_id = Column(String, unique=True, index=True, nullable=False)
    username = Column(String, index=True, default="unknown")
    timestamp = Column(String, index=True)
    risk_score = Column(Float, default=0.0)
    severity = Column(String, index=True, default="low")
    payload_json = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class StoredAlert(Base):
    __tablename__ = "stored_alerts"

    id = Column(Integer, primary_key=True, index=True)
    record_id = Column(String, unique=True, index=True, nullable=False)
    category = Column(String, index=True, default="other")
    severity = Column(String, index=True, default="low")
    status = Column(String, index=True, default="pending")  # pending, reviewing, resolved, dismissed
    assigned_to = Column(String)
    payload_json = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
