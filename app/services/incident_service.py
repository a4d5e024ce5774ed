"""Compliance log for emergencies, safety disclosures and special-event requests."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import SafetyIncident, SpecialEventRequest
from app.services.alert_service import alert_critical
from app.services.safety_service import (
    ACTION_ESCALATE_IMMEDIATE,
    ACTION_URGENT_CARE,
    EmergencyResult,
    SafetyResult,
    SpecialEventResult,
)

logger = get_logger("incident_service")

ACTION_ESCALATED_IMMEDIATE = "escalated_immediate"
ACTION_URGENT_CARE_ROUTING = "urgent_care_routing"
ACTION_HUMAN_NOTIFIED = "human_notified"
ACTION_DISCLAIMER_SHOWN = "disclaimer_shown"

EMERGENCY_INCIDENT_TYPES = {
    "dental_emergency": "emergency_dental",
    "medical_emergency": "emergency_medical",
    "accident": "accident",
    "severe_pain": "severe_pain",
}


def emergency_action_taken(emergency: EmergencyResult) -> str:
    if emergency.severity >= 4 or emergency.recommended_action == ACTION_ESCALATE_IMMEDIATE:
        return ACTION_ESCALATED_IMMEDIATE
    if emergency.recommended_action == ACTION_URGENT_CARE:
        return ACTION_URGENT_CARE_ROUTING
    return ACTION_HUMAN_NOTIFIED


class IncidentSink:
    """Writes incident rows. Every method swallows and logs its own failures.

    Routing must not depend on whether the compliance log could be written.
    """

    def __init__(self, db: Session):
        self.db = db

    def _save(self, record) -> bool:
        try:
            self.db.add(record)
            self.db.commit()
            return True
        except Exception as exc:
            self.db.rollback()
            logger.error(
                "Failed to record incident",
                extra={"context": {"table": record.__tablename__, "error": str(exc)}},
            )
            return False

    def log_emergency(
        self,
        *,
        tenant_id: str,
        conversation_id: Optional[str],
        lead_id: Optional[str],
        message: str,
        channel: str,
        vertical: str,
        emergency: EmergencyResult,
    ) -> bool:
        incident_type = EMERGENCY_INCIDENT_TYPES.get(emergency.emergency_type, emergency.emergency_type)
        saved = self._save(
            SafetyIncident(
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                lead_id=lead_id,
                incident_type=incident_type,
                severity=emergency.severity,
                message_content=message,
                channel=channel,
                vertical=vertical,
                action_taken=emergency_action_taken(emergency),
                detected_keywords=list(emergency.keywords),
                response_message=emergency.message,
                created_at=datetime.now(timezone.utc),
            )
        )
        if emergency.severity >= 5:
            alert_critical(
                f"Emergencia detectada: {incident_type}",
                {"tenant_id": tenant_id, "conversation_id": conversation_id, "severity": emergency.severity},
            )
        return saved

    def log_safety_requirement(
        self,
        *,
        tenant_id: str,
        conversation_id: Optional[str],
        lead_id: Optional[str],
        message: str,
        channel: str,
        vertical: str,
        safety: SafetyResult,
    ) -> bool:
        return self._save(
            SafetyIncident(
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                lead_id=lead_id,
                incident_type=safety.category,
                severity=4 if safety.should_escalate_to_human else 3,
                message_content=message,
                channel=channel,
                vertical=vertical,
                action_taken=ACTION_ESCALATED_IMMEDIATE if safety.should_escalate_to_human else ACTION_DISCLAIMER_SHOWN,
                detected_keywords=list(safety.detected_items),
                response_message=safety.disclaimer,
                created_at=datetime.now(timezone.utc),
            )
        )

    def log_special_event(
        self,
        *,
        tenant_id: str,
        conversation_id: Optional[str],
        lead_id: Optional[str],
        branch_id: Optional[str],
        event: SpecialEventResult,
        contact_name: Optional[str] = None,
        contact_phone: Optional[str] = None,
    ) -> bool:
        return self._save(
            SpecialEventRequest(
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                lead_id=lead_id,
                branch_id=branch_id,
                event_type=event.event_type,
                group_size=event.group_size,
                special_requirements=list(event.special_requirements),
                escalation_reason=event.escalation_reason,
                contact_name=contact_name,
                contact_phone=contact_phone,
                status="pending",
                created_at=datetime.now(timezone.utc),
            )
        )
