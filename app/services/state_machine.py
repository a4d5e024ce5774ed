from enum import Enum


class SupervisorStage(str, Enum):
    DETECTING = "detecting"
    SAFETY_CHECKING = "safety_checking"
    ESCALATION_DECIDING = "escalation_deciding"
    ROUTED = "routed"


VALID_TRANSITIONS = {
    SupervisorStage.DETECTING: [SupervisorStage.SAFETY_CHECKING],
    SupervisorStage.SAFETY_CHECKING: [SupervisorStage.ESCALATION_DECIDING],
    SupervisorStage.ESCALATION_DECIDING: [SupervisorStage.ROUTED],
    SupervisorStage.ROUTED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_stage: SupervisorStage, to_stage: SupervisorStage):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(f"Invalid transition: {from_stage.value} -> {to_stage.value}")


def can_transition(from_stage: SupervisorStage, to_stage: SupervisorStage) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_stage, [])
    return to_stage in allowed


def transition(from_stage: SupervisorStage, to_stage: SupervisorStage) -> SupervisorStage:
    """Perform stage transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_stage, to_stage):
        raise InvalidTransitionError(from_stage, to_stage)
    return to_stage


def start_safety_checks(current: SupervisorStage) -> SupervisorStage:
    return transition(current, SupervisorStage.SAFETY_CHECKING)


def start_escalation_decision(current: SupervisorStage) -> SupervisorStage:
    return transition(current, SupervisorStage.ESCALATION_DECIDING)


def mark_routed(current: SupervisorStage) -> SupervisorStage:
    return transition(current, SupervisorStage.ROUTED)
