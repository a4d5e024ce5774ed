from app.models.channel_connection import ChannelConnection
from app.models.conversation import Conversation
from app.models.distributed_lock import DistributedLock
from app.models.job import Job
from app.models.lead import Lead
from app.models.message import Message
from app.models.safety_incident import SafetyIncident
from app.models.special_event_request import SpecialEventRequest
from app.models.tenant import Tenant

__all__ = [
    "Tenant",
    "Lead",
    "Conversation",
    "Message",
    "ChannelConnection",
    "Job",
    "DistributedLock",
    "SafetyIncident",
    "SpecialEventRequest",
]
