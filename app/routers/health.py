from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.circuit_breaker import get_all_metrics
from app.services.job_queue_service import get_queue_stats
from app.services.lock_service import get_active_locks

router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/health/system")
def system_health(db: Session = Depends(get_db)):
    circuits = get_all_metrics()
    degraded = any(circuit["state"] != "closed" for circuit in circuits)
    return {
        "status": "degraded" if degraded else "ok",
        "queue": get_queue_stats(db),
        "locks": get_active_locks(db),
        "circuits": circuits,
    }
