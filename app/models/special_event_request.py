import uuid

from sqlalchemy import Column, Integer, Text
from sqlalchemy.dialects.postgresql import ARRAY, TIMESTAMP, UUID

from app.database import Base


class SpecialEventRequest(Base):
    __tablename__ = "special_event_requests"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    conversation_id = Column(UUID(as_uuid=True))
    lead_id = Column(UUID(as_uuid=True))
    branch_id = Column(Text)
    event_type = Column(Text, nullable=False)
    group_size = Column(Integer)
    special_requirements = Column(ARRAY(Text))
    escalation_reason = Column(Text)
    contact_name = Column(Text)
    contact_phone = Column(Text)
    status = Column(Text, nullable=False, default="pending")
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
