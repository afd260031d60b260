"""How a challenge looks to a particular user.

Everything here is derived from user ids. ``direction`` is a display label
only and is never consulted when validating a transition.
"""

from enum import Enum
from typing import List, Optional

from ..models.challenge import ChallengeRecord, ChallengeStatus, NegotiationStatus


class Perspective(str, Enum):
    CHALLENGER = "challenger"
    CHALLENGEE = "challengee"
    OBSERVER = "observer"


class Action(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    PROPOSE_COUNTER = "propose_counter"
    ACCEPT_COUNTER = "accept_counter"
    SUBMIT_RESPONSE = "submit_response"
    SET_RESPONSE_VISIBILITY = "set_response_visibility"
    APPROVE_RESPONSE = "approve_response"
    REQUEST_RETRY = "request_retry"
    INITIATE_DISPUTE = "initiate_dispute"


def perspective(record: ChallengeRecord, user_id: str) -> Perspective:
    if user_id == record.from_user_id:
        return Perspective.CHALLENGER
    if user_id == record.to_user_id:
        return Perspective.CHALLENGEE
    return Perspective.OBSERVER


def direction(record: ChallengeRecord, user_id: str) -> Optional[str]:
    # "to_buddy": the viewer sent the challenge
    viewer = perspective(record, user_id)
    if viewer == Perspective.CHALLENGER:
        return "to_buddy"
    if viewer == Perspective.CHALLENGEE:
        return "from_buddy"
    return None


def negotiation_status_for(record: ChallengeRecord, user_id: str) -> NegotiationStatus:
    """Stored negotiation status, relabelled sent/received for the viewer."""
    if record.status != ChallengeStatus.NEGOTIATING or record.latest_offer is None:
        return record.negotiation_status
    if not record.is_party(user_id):
        return record.negotiation_status
    if record.latest_offer.author_user_id == user_id:
        return NegotiationStatus.COUNTER_OFFER_SENT
    return NegotiationStatus.COUNTER_OFFER_RECEIVED


def available_actions(record: ChallengeRecord, user_id: str) -> List[Action]:
    viewer = perspective(record, user_id)
    if viewer == Perspective.OBSERVER or record.is_terminal:
        return []

    status = record.status
    actions = []
    if status == ChallengeStatus.PENDING and viewer == Perspective.CHALLENGEE:
        actions += [Action.ACCEPT, Action.PROPOSE_COUNTER, Action.DECLINE]
    elif status == ChallengeStatus.NEGOTIATING:
        if record.latest_offer is None or record.latest_offer.author_user_id != user_id:
            if record.latest_offer is not None:
                actions.append(Action.ACCEPT_COUNTER)
            actions.append(Action.PROPOSE_COUNTER)
        actions.append(Action.DECLINE)
    elif viewer == Perspective.CHALLENGEE:
        resubmission = status == ChallengeStatus.RESPONSE_SUBMITTED and record.retry_count > 0
        if status in (ChallengeStatus.ACCEPTED, ChallengeStatus.RETRY_REQUESTED) or resubmission:
            actions.append(Action.SUBMIT_RESPONSE)
        if record.response_data is not None and status in (
            ChallengeStatus.RESPONSE_SUBMITTED, ChallengeStatus.RETRY_REQUESTED, ChallengeStatus.DISPUTED,
        ):
            actions.append(Action.SET_RESPONSE_VISIBILITY)
    elif status == ChallengeStatus.RESPONSE_SUBMITTED:
        actions += [Action.APPROVE_RESPONSE, Action.REQUEST_RETRY, Action.INITIATE_DISPUTE]
    return actions
