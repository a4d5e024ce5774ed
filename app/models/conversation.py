import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from app.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False)
    channel = Column(Text, nullable=False)  # whatsapp, instagram
    channel_connection_id = Column(UUID(as_uuid=True), ForeignKey("channel_connections.id"))
    status = Column(Text, nullable=False, default="active")  # active, escalated, closed
    ai_handling = Column(Boolean, nullable=False, default=True)
    escalation_reason = Column(Text)
    escalated_at = Column(TIMESTAMP(timezone=True))
    started_at = Column(TIMESTAMP(timezone=True), nullable=False)
    last_message_at = Column(TIMESTAMP(timezone=True))
    # Supervisor state kept between turns: branch_context, last_intent.
    context = Column(JSONB, nullable=False, default=dict)

    messages = relationship("Message", back_populates="conversation")
