from app.schemas.job import MaintenanceResponse, ProcessJobsRequest, ProcessJobsResponse
from app.schemas.message import InboundMessageRequest, InboundMessageResponse, SupervisorOutput

__all__ = [
    "InboundMessageRequest",
    "InboundMessageResponse",
    "SupervisorOutput",
    "ProcessJobsRequest",
    "ProcessJobsResponse",
    "MaintenanceResponse",
]
