from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..errors import ValidationError
from ..models.challenge import ChallengeRecord
from .money import PayoutBreakdown, payout_breakdown
from .state_machine import ChallengeStateMachine
from .transitions import Transition, to_amount


@dataclass(frozen=True)
class ApprovalPreview:
    """What the challenger is shown before confirming an approval."""
    challenge_id: str
    winner_user_id: str
    wager_token: Optional[str]
    breakdown: Optional[PayoutBreakdown]


class ResponseReviewFlow:
    """Approve, retry and dispute on top of a submitted response.

    The payout is always recomputed from the record being approved. A caller
    that showed the user a quote passes it back as ``quoted_payout`` and the
    approval is refused if the terms have moved since.
    """

    def __init__(self, machine: ChallengeStateMachine):
        self.machine = machine

    def preview_approval(self, record: ChallengeRecord) -> ApprovalPreview:
        breakdown = None
        if record.is_wagered:
            breakdown = payout_breakdown(record.wager_amount, record.wager_token, self.machine.fee_rate)
        return ApprovalPreview(
            challenge_id=record.id,
            winner_user_id=record.to_user_id,
            wager_token=record.wager_token,
            breakdown=breakdown,
        )

    def plan_approve(self, record: ChallengeRecord, acting_user_id: str, quoted_payout: Optional[Decimal] = None) -> Transition:
        transition = self.machine.plan_approve_response(record, acting_user_id, True)
        if quoted_payout is not None:
            fresh = self.preview_approval(record).breakdown
            current = fresh.winner_payout if fresh else Decimal("0")
            if to_amount(quoted_payout) != current:
                raise ValidationError(
                    "The payout has changed since it was quoted",
                    {"quoted_payout": str(quoted_payout), "current_payout": str(current)},
                )
        return transition

    def plan_request_retry(self, record: ChallengeRecord, acting_user_id: str, comment: str) -> Transition:
        return self.machine.plan_request_retry(record, acting_user_id, comment)

    def plan_dispute(self, record: ChallengeRecord, acting_user_id: str, comment: Optional[str] = None) -> Transition:
        return self.machine.plan_initiate_dispute(record, acting_user_id, comment)

    async def approve(self, record: ChallengeRecord, acting_user_id: str, quoted_payout: Optional[Decimal] = None) -> Transition:
        return await self.machine.settle(self.plan_approve(record, acting_user_id, quoted_payout))

    async def request_retry(self, record: ChallengeRecord, acting_user_id: str, comment: str) -> Transition:
        return await self.machine.settle(self.plan_request_retry(record, acting_user_id, comment))

    async def dispute(self, record: ChallengeRecord, acting_user_id: str, comment: Optional[str] = None) -> Transition:
        return await self.machine.settle(self.plan_dispute(record, acting_user_id, comment))
