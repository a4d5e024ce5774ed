from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.message import InboundMessageRequest, InboundMessageResponse, SupervisorOutput
from app.services.inbound_service import ROUTE_HUMAN_HANDLING, RecordNotFoundError, handle_inbound_message
from app.services.supervisor_service import STAGE_ESCALATION

router = APIRouter()


@router.post("/messages/inbound", response_model=InboundMessageResponse)
def inbound_message(request: InboundMessageRequest, db: Session = Depends(get_db)):
    """Run the supervisor on an inbound message and queue the reply."""
    try:
        outcome = handle_inbound_message(
            db,
            tenant_id=request.tenant_id,
            lead_id=request.lead_id,
            channel=request.channel,
            content=request.content,
            conversation_id=request.conversation_id,
            external_id=request.external_id,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    state = outcome.state
    response = InboundMessageResponse(
        conversation_id=outcome.conversation_id,
        message_id=outcome.message_id,
        route=outcome.route,
        escalated=outcome.route in (STAGE_ESCALATION, ROUTE_HUMAN_HANDLING),
        job_id=outcome.job_id,
        reply_message_id=outcome.reply_message_id,
    )
    if state is None:
        return response

    response.supervisor = SupervisorOutput(
        detected_intent=state.detected_intent,
        detected_signals=state.detected_signals,
        extracted_data=state.extracted_data,
        next_agent=state.next_agent,
        routing_reason=state.routing_reason,
        score_change=state.score_change,
        control=state.control,
        agent_trace=state.agent_trace,
        safety_analysis=state.safety_analysis,
        errors=state.errors,
    )
    return response
