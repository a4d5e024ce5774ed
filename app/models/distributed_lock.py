from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from app.database import Base


class DistributedLock(Base):
    __tablename__ = "distributed_locks"

    # Primary key on lock_name is the one-holder-per-lock guarantee.
    lock_name = Column(Text, primary_key=True)
    acquired_by = Column(Text, nullable=False)
    acquired_at = Column(TIMESTAMP(timezone=True), nullable=False)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    lock_metadata = Column("metadata", JSONB, nullable=False, default=dict)
