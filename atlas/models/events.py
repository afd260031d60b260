from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Tuple
from datetime import datetime
from enum import Enum


class EventType(str, Enum):
    CHALLENGE_CREATED = "challenge_created"
    COUNTER_OFFER_PROPOSED = "counter_offer_proposed"
    CHALLENGE_ACCEPTED = "challenge_accepted"
    CHALLENGE_DECLINED = "challenge_declined"
    RESPONSE_SUBMITTED = "response_submitted"
    RESPONSE_VISIBILITY_CHANGED = "response_visibility_changed"
    RETRY_REQUESTED = "retry_requested"
    DISPUTE_OPENED = "dispute_opened"
    CHALLENGE_COMPLETED = "challenge_completed"
    CHALLENGE_TIED = "challenge_tied"
    CHALLENGE_EXPIRED = "challenge_expired"


class ChallengeEvent(BaseModel):
    """Domain event emitted by a transition, delivered after the record is saved."""
    model_config = ConfigDict(frozen=True)

    type: EventType
    challenge_id: str
    actor_user_id: Optional[str] = None
    recipient_user_ids: Tuple[str, ...] = ()
    occurred_at: datetime
    data: dict = Field(default_factory=dict)
