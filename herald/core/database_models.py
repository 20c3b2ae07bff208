# herald/core/database_models.py
from datetime import datetime
import uuid
from sqlalchemy import (
    Column, String, DateTime, JSON, Index
)

from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class TargetRecord(Base):
    __tablename__ = 'targets'

    id = Column(String(36), primary_key=True, default=_uuid)
    channel = Column(String(50), nullable=False)
    target_type = Column(String(50))  # Nullable: legacy rows may lack a type
    attributes = Column(JSON, default=dict)  # Base field value plus custom fields
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index('ix_targets_channel', 'channel'),)


class TargetGroupRecord(Base):
    __tablename__ = 'target_groups'

    id = Column(String(36), primary_key=True, default=_uuid)
    channel = Column(String(50), nullable=False)
    name = Column(String(100), nullable=False)
    target_ids = Column(JSON, default=list)  # Ordered member ids
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index('ix_target_groups_channel', 'channel'),)
