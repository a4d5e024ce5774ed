import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from app.database import Base

# Delivery statuses at or past "sent"; anything else is not yet delivered.
DELIVERED_STATUSES = ("sent", "delivered", "read")


class Message(Base):
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False)
    lead_id = Column(UUID(as_uuid=True))
    role = Column(Text, nullable=False)  # user, assistant
    channel = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")  # pending, sent, delivered, read, failed
    external_id = Column(Text)
    sent_at = Column(TIMESTAMP(timezone=True))
    error_message = Column(Text)
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
