from pulse.models.user import User
from pulse.models.office import Office
from pulse.models.access_event import AccessEvent
from pulse.models.presence_session import PresenceSession
from pulse.models.attendance import DailyAttendance, HourlyOccupancy
from pulse.models.sync_status import SyncStatus

__all__ = [
    "User",
    "Office",
    "AccessEvent",
    "PresenceSession",
    "DailyAttendance",
    "HourlyOccupancy",
    "SyncStatus",
]
