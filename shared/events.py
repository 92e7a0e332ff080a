from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
import json


class EventType(str, Enum):
    # Competitor registration
    COMPETITOR_REGISTERED = "competitor.registered"
    COMPETITOR_APPROVED = "competitor.approved"
    COMPETITOR_REJECTED = "competitor.rejected"

    # Accounts
    USER_REGISTERED = "user.registered"
    USER_APPROVED = "user.approved"
    USER_REJECTED = "user.rejected"


@dataclass
class Event:
    type: EventType
    entity_id: str
    recipient: Optional[str] = None
    timestamp: str = None
    data: dict = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"
        if self.data is None:
            self.data = {}

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "entity_id": self.entity_id,
            "recipient": self.recipient,
            "timestamp": self.timestamp,
            "data": self.data
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            type=EventType(data["type"]) if data["type"] in [e.value for e in EventType] else data["type"],
            entity_id=data["entity_id"],
            recipient=data.get("recipient"),
            timestamp=data.get("timestamp"),
            data=data.get("data", {})
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        return cls.from_dict(json.loads(json_str))


def competitor_registered_event(competitor, tournament) -> Event:
    return Event(
        type=EventType.COMPETITOR_REGISTERED,
        entity_id=str(competitor.id),
        data={
            "first_name": competitor.first_name,
            "last_name": competitor.last_name,
            "tournament_name": tournament.name,
            "category": competitor.category,
            "personal_number": competitor.personal_number,
        }
    )


def competitor_decision_event(competitor, tournament, approved: bool, reason: str = None) -> Event:
    data = {
        "first_name": competitor.first_name,
        "last_name": competitor.last_name,
        "tournament_name": tournament.name,
        "category": competitor.category,
    }
    if approved:
        data["tournament_start"] = tournament.tournament_start.isoformat()
        data["tournament_end"] = tournament.tournament_end.isoformat()
    else:
        data["rejection_reason"] = reason
    return Event(
        type=EventType.COMPETITOR_APPROVED if approved else EventType.COMPETITOR_REJECTED,
        entity_id=str(competitor.id),
        data=data
    )


def user_status_event(user, event_type: EventType) -> Event:
    return Event(
        type=event_type,
        entity_id=str(user.id),
        recipient=user.email,
        data={"name": user.name, "status": user.status}
    )
