from enum import Enum
from pydantic import BaseModel, Field
from datetime import datetime, timezone

class ActivityType(str, Enum):
    ACTION = "Action"
    SUCCESS = "Success"
    UPDATE = "Update"
    ARCHIVE = "Archive"
    SYNC = "Sync"

class ActivityLogEntry(BaseModel):
    user: str = "system"
    type: str = ActivityType.ACTION.value
    msg: str
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
