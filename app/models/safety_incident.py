import uuid

from sqlalchemy import Column, Integer, Text
from sqlalchemy.dialects.postgresql import ARRAY, TIMESTAMP, UUID

from app.database import Base


class SafetyIncident(Base):
    __tablename__ = "safety_incidents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    conversation_id = Column(UUID(as_uuid=True))
    lead_id = Column(UUID(as_uuid=True))
    incident_type = Column(Text, nullable=False)  # emergency_dental, emergency_medical, accident, severe_pain, food_allergy, ...
    severity = Column(Integer, nullable=False)
    message_content = Column(Text, nullable=False)
    channel = Column(Text)
    vertical = Column(Text)
    action_taken = Column(Text, nullable=False)  # escalated_immediate, urgent_care_routing, human_notified, disclaimer_shown
    detected_keywords = Column(ARRAY(Text))
    response_message = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
