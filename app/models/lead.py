import uuid

from sqlalchemy import Column, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from app.database import Base


class Lead(Base):
    __tablename__ = "leads"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    name = Column(Text)
    phone = Column(Text)
    instagram_psid = Column(Text)
    preferred_branch_id = Column(Text)
    score = Column(Integer, nullable=False, default=50)
    classification = Column(Text, nullable=False, default="warm")  # cold, warm, hot
    score_updated_at = Column(TIMESTAMP(timezone=True))
