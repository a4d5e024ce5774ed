from app.services.circuit_breaker import CircuitBreaker, CircuitState, get_circuit_breaker
from app.services.job_queue_service import (
    JobStatus,
    JobType,
    claim_next_job,
    complete_job,
    enqueue_job,
    fail_job,
    recover_unsent_messages,
)
from app.services.lock_service import LockResult, acquire_lock, release_lock, with_lock
from app.services.result import Result
from app.services.supervisor_service import route_next, run_supervisor
