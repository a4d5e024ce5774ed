from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

from app.database import Base


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(UUID(as_uuid=True), primary_key=True)
    name = Column(Text, nullable=False)
    vertical = Column(Text, nullable=False, default="general")  # dental, medical, restaurant, general
    status = Column(Text, nullable=False, default="active")  # active, suspended, inactive
    ai_config = Column(JSONB, nullable=False, default=dict)
    business_context = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False)
