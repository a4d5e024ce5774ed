import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from app.database import Base


class ChannelConnection(Base):
    __tablename__ = "channel_connections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    channel = Column(Text, nullable=False)  # whatsapp, instagram
    status = Column(Text, nullable=False, default="connected")  # connected, disconnected, error
    whatsapp_phone_number_id = Column(Text)
    whatsapp_access_token = Column(Text)
    instagram_page_id = Column(Text)
    instagram_access_token = Column(Text)
    updated_at = Column(TIMESTAMP(timezone=True))
