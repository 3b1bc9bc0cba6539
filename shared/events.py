from enum import Enum
from dataclasses import dataclass
from datetime import datetime
import json


class EventType(str, Enum):
    # Session lifecycle
    SESSION_STARTED = "session.started"
    SESSION_REUSED = "session.reused"

    # State changes
    STATE_CHANGED = "state.changed"


@dataclass
class Event:
    type: EventType
    session_id: str
    workspace_id: int = None
    timestamp: str = None
    data: dict = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow().isoformat() + "Z"
        if self.data is None:
            self.data = {}

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "session_id": self.session_id,
            "workspace_id": self.workspace_id,
            "timestamp": self.timestamp,
            "data": self.data
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            type=EventType(data["type"]) if data["type"] in [e.value for e in EventType] else data["type"],
            session_id=data["session_id"],
            workspace_id=data.get("workspace_id"),
            timestamp=data.get("timestamp"),
            data=data.get("data", {})
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        return cls.from_dict(json.loads(json_str))


def session_started_event(session_id: str, workspace_id: int, session_url: str, expires_at: str) -> Event:
    return Event(
        type=EventType.SESSION_STARTED,
        session_id=session_id,
        workspace_id=workspace_id,
        data={
            "session_url": session_url,
            "expires_at": expires_at
        }
    )


def session_reused_event(session_id: str, workspace_id: int) -> Event:
    return Event(
        type=EventType.SESSION_REUSED,
        session_id=session_id,
        workspace_id=workspace_id
    )


def state_changed_event(session_id: str, workspace_id: int, from_state: str, to_state: str,
                        reason: str = None) -> Event:
    return Event(
        type=EventType.STATE_CHANGED,
        session_id=session_id,
        workspace_id=workspace_id,
        data={
            "from_state": from_state,
            "to_state": to_state,
            "reason": reason
        }
    )
