"""Status transitions of a challenge and the escrow movements they imply.

Transition table (terminal statuses in brackets)::

    pending            --accept-->            accepted
    pending            --propose counter-->   negotiating
    pending            --decline-->           [declined]
    pending            --expiry reached-->    [expired]
    negotiating        --accept counter-->    accepted
    negotiating        --propose counter-->   negotiating
    negotiating        --decline-->           [declined]
    accepted           --submit response-->   response_submitted
    response_submitted --approve-->           [completed]
    response_submitted --request retry-->     retry_requested
    response_submitted --dispute-->           disputed
    retry_requested    --submit response-->   response_submitted
    disputed           --vote: winner-->      [completed]
    disputed           --vote: tie-->         [tie_resolved]

Every ``plan_*`` method is pure and raises before anything is touched. The
async operations plan and then settle, returning the settled transition.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from ..config import (
    DEFAULT_EXPIRY_DAYS,
    EXPIRE_ACCEPTED_CHALLENGES,
    MAX_VIDEO_DURATION_SECONDS,
    PLATFORM_ACCOUNT_ID,
)
from ..errors import ValidationError
from ..models.challenge import (
    ChallengeRecord,
    ChallengeStatus,
    DisputeOutcome,
    LedgerEntryKind,
    ProposedTerms,
    ResponseData,
    ResponseType,
    TieDetails,
    utcnow,
)
from ..models.escrow import Payee
from ..models.events import EventType
from .escrow import EscrowClient
from .money import payout_breakdown, tie_refund_breakdown
from .negotiation import NegotiationEngine
from .transitions import (
    Clock,
    EscrowStep,
    Settler,
    Transition,
    make_event,
    noop,
    refund_steps,
    require,
    settlement_steps,
    stake_steps,
    validate_terms,
)

REVIEWABLE_STATUSES = (ChallengeStatus.ACCEPTED, ChallengeStatus.RETRY_REQUESTED)
VISIBILITY_STATUSES = (
    ChallengeStatus.RESPONSE_SUBMITTED,
    ChallengeStatus.RETRY_REQUESTED,
    ChallengeStatus.DISPUTED,
)


def validate_response(response: ResponseData) -> None:
    if response.response_type == ResponseType.VIDEO:
        if not response.video_url or response.duration_seconds is None:
            raise ValidationError("A video proof needs a URL and a duration")
        if response.duration_seconds <= 0:
            raise ValidationError("Video duration must be positive", {"duration_seconds": response.duration_seconds})
        if response.duration_seconds > MAX_VIDEO_DURATION_SECONDS:
            raise ValidationError(
                f"Videos can be at most {MAX_VIDEO_DURATION_SECONDS} seconds long",
                {"duration_seconds": response.duration_seconds},
            )
        if response.file_size_bytes is not None and response.file_size_bytes < 0:
            raise ValidationError("File size cannot be negative")
    elif not response.text_content or not response.text_content.strip():
        raise ValidationError("A text proof cannot be empty")


class ChallengeStateMachine:
    def __init__(
        self,
        escrow: EscrowClient,
        clock: Clock = utcnow,
        fee_rate: Optional[Decimal] = None,
        expire_accepted: bool = EXPIRE_ACCEPTED_CHALLENGES,
    ):
        self.settler = Settler(escrow, clock)
        self.negotiation = NegotiationEngine(self.settler, clock)
        self.clock = clock
        self.fee_rate = fee_rate
        self.expire_accepted = expire_accepted

    async def settle(self, transition: Transition) -> Transition:
        return await self.settler.settle(transition)

    # Creation

    def plan_create(
        self,
        from_user_id: str,
        to_user_id: str,
        challenge_text: str,
        wager_amount=Decimal("0"),
        wager_token: Optional[str] = None,
        expiry_days: Optional[int] = None,
        challenge_id: Optional[str] = None,
    ) -> Transition:
        if not from_user_id or not to_user_id:
            raise ValidationError("Both the challenger and the challengee are required")
        if from_user_id == to_user_id:
            raise ValidationError("You cannot challenge yourself")
        expiry_days = DEFAULT_EXPIRY_DAYS if expiry_days is None else expiry_days
        text, wager, token = validate_terms(challenge_text, wager_amount, wager_token, expiry_days)

        now = self.clock()
        record = ChallengeRecord(
            id=challenge_id or uuid4().hex,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            challenge_text=text,
            wager_amount=wager,
            wager_token=token,
            expiry_days=expiry_days,
            created_at=now,
            expires_at=now + timedelta(days=expiry_days),
        )
        steps = ()
        if record.is_wagered:
            steps = (EscrowStep(kind=LedgerEntryKind.DEPOSIT, amount=wager, token=token, user_id=from_user_id),)
        event = make_event(
            EventType.CHALLENGE_CREATED, record, now, from_user_id, (to_user_id,),
            challenge_text=text, wager_amount=wager, wager_token=token,
        )
        return Transition("create", record, record, (event,), steps, from_user_id)

    # Acceptance and decline

    def plan_accept(self, record: ChallengeRecord, acting_user_id: str) -> Transition:
        operation = "accept"
        require(acting_user_id == record.to_user_id, operation, record, acting_user_id, "only the challengee can accept")
        require(
            record.status == ChallengeStatus.PENDING, operation, record, acting_user_id,
            "a challenge under negotiation is accepted through its counter-offer"
            if record.status == ChallengeStatus.NEGOTIATING else "",
        )

        now = self.clock()
        target = record.evolve(status=ChallengeStatus.ACCEPTED, accepted_at=now)
        event = make_event(
            EventType.CHALLENGE_ACCEPTED, target, now, acting_user_id, (record.from_user_id,),
            wager_amount=record.wager_amount, wager_token=record.wager_token,
        )
        steps = stake_steps(record, record.wager_amount, record.wager_token)
        return Transition(operation, record, target, (event,), steps, acting_user_id)

    def plan_decline(self, record: ChallengeRecord, acting_user_id: str) -> Transition:
        if record.status == ChallengeStatus.NEGOTIATING:
            return self.negotiation.plan_decline_negotiation(record, acting_user_id)

        operation = "decline"
        require(record.status == ChallengeStatus.PENDING, operation, record, acting_user_id)
        require(acting_user_id == record.to_user_id, operation, record, acting_user_id, "only the challengee can decline")

        now = self.clock()
        target = record.evolve(status=ChallengeStatus.DECLINED, latest_offer=None, resolved_at=now)
        event = make_event(EventType.CHALLENGE_DECLINED, target, now, acting_user_id, (record.from_user_id,))
        return Transition(operation, record, target, (event,), refund_steps(record), acting_user_id)

    # Negotiation

    def plan_propose_counter(self, record: ChallengeRecord, proposing_user_id: str, terms: ProposedTerms) -> Transition:
        return self.negotiation.plan_propose_counter(record, proposing_user_id, terms)

    def plan_accept_counter(self, record: ChallengeRecord, accepting_user_id: str) -> Transition:
        return self.negotiation.plan_accept_counter(record, accepting_user_id)

    def plan_decline_negotiation(self, record: ChallengeRecord, declining_user_id: str) -> Transition:
        return self.negotiation.plan_decline_negotiation(record, declining_user_id)

    # Response and review

    def plan_submit_response(self, record: ChallengeRecord, acting_user_id: str, response: ResponseData) -> Transition:
        operation = "submit_response"
        require(acting_user_id == record.to_user_id, operation, record, acting_user_id, "only the challengee can respond")
        resubmission = record.status == ChallengeStatus.RESPONSE_SUBMITTED and record.retry_count > 0
        require(
            record.status in REVIEWABLE_STATUSES or resubmission, operation, record, acting_user_id,
            "the response is awaiting review" if record.status == ChallengeStatus.RESPONSE_SUBMITTED else "",
        )
        validate_response(response)

        now = self.clock()
        response = response.model_copy(update={"submitted_at": now, "submitter_user_id": acting_user_id})
        target = record.evolve(
            status=ChallengeStatus.RESPONSE_SUBMITTED,
            response_data=response,
            response_submitted_at=now,
        )
        event = make_event(
            EventType.RESPONSE_SUBMITTED, target, now, acting_user_id, (record.from_user_id,),
            response_type=response.response_type.value, resubmission=record.retry_count > 0,
        )
        return Transition(operation, record, target, (event,), actor_user_id=acting_user_id)

    def plan_set_response_visibility(self, record: ChallengeRecord, acting_user_id: str, is_public: bool) -> Transition:
        operation = "set_response_visibility"
        require(acting_user_id == record.to_user_id, operation, record, acting_user_id, "only the responder can change visibility")
        require(
            record.status in VISIBILITY_STATUSES and record.response_data is not None,
            operation, record, acting_user_id,
        )
        if record.response_data.is_public == is_public:
            return noop(operation, record, acting_user_id)

        now = self.clock()
        target = record.evolve(response_data=record.response_data.model_copy(update={"is_public": is_public}))
        event = make_event(
            EventType.RESPONSE_VISIBILITY_CHANGED, target, now, acting_user_id, (record.from_user_id,),
            is_public=is_public,
        )
        return Transition(operation, record, target, (event,), actor_user_id=acting_user_id)

    def _check_reviewer(self, operation: str, record: ChallengeRecord, acting_user_id: str) -> None:
        require(acting_user_id == record.from_user_id, operation, record, acting_user_id, "only the challenger can review")
        require(record.status == ChallengeStatus.RESPONSE_SUBMITTED, operation, record, acting_user_id)

    def _plan_completion(
        self, operation: str, record: ChallengeRecord, winner_user_id: str, acting_user_id: Optional[str]
    ) -> Transition:
        now = self.clock()
        target = record.evolve(
            status=ChallengeStatus.COMPLETED,
            winner_user_id=winner_user_id,
            resolved_at=now,
        )
        steps = ()
        data = {"winner_user_id": winner_user_id}
        if record.is_wagered:
            breakdown = payout_breakdown(record.wager_amount, record.wager_token, self.fee_rate)
            steps = settlement_steps(winner_user_id, breakdown.winner_payout, breakdown.atlas_fee, record.wager_token)
            data.update(
                total_pot=breakdown.total_pot,
                winner_payout=breakdown.winner_payout,
                atlas_fee=breakdown.atlas_fee,
                wager_token=record.wager_token,
            )
        event = make_event(
            EventType.CHALLENGE_COMPLETED, target, now, acting_user_id,
            (record.from_user_id, record.to_user_id), **data,
        )
        return Transition(operation, record, target, (event,), steps, acting_user_id)

    def plan_approve_response(
        self, record: ChallengeRecord, acting_user_id: str, approved: bool, comment: Optional[str] = None
    ) -> Transition:
        operation = "approve_response"
        self._check_reviewer(operation, record, acting_user_id)
        if approved:
            return self._plan_completion(operation, record, record.to_user_id, acting_user_id)

        now = self.clock()
        target = record.evolve(
            status=ChallengeStatus.RETRY_REQUESTED,
            retry_comment=comment.strip() if comment else None,
            retry_count=record.retry_count + 1,
        )
        event = make_event(
            EventType.RETRY_REQUESTED, target, now, acting_user_id, (record.to_user_id,),
            comment=target.retry_comment, retry_count=target.retry_count,
        )
        return Transition(operation, record, target, (event,), actor_user_id=acting_user_id)

    def plan_request_retry(self, record: ChallengeRecord, acting_user_id: str, comment: str) -> Transition:
        self._check_reviewer("request_retry", record, acting_user_id)
        if not comment or not comment.strip():
            raise ValidationError("Tell the challengee what to improve before asking for a retry")
        transition = self.plan_approve_response(record, acting_user_id, False, comment)
        return Transition("request_retry", transition.origin, transition.record, transition.events, actor_user_id=acting_user_id)

    def plan_initiate_dispute(self, record: ChallengeRecord, acting_user_id: str, comment: Optional[str] = None) -> Transition:
        operation = "initiate_dispute"
        self._check_reviewer(operation, record, acting_user_id)

        now = self.clock()
        target = record.evolve(
            status=ChallengeStatus.DISPUTED,
            dispute_comment=comment.strip() if comment else None,
        )
        event = make_event(
            EventType.DISPUTE_OPENED, target, now, acting_user_id, (record.to_user_id,),
            comment=target.dispute_comment,
        )
        return Transition(operation, record, target, (event,), actor_user_id=acting_user_id)

    def plan_resolve_dispute(self, record: ChallengeRecord, outcome: DisputeOutcome) -> Transition:
        operation = "resolve_dispute"
        require(record.status == ChallengeStatus.DISPUTED, operation, record, None)

        if not outcome.tie:
            if not record.is_party(outcome.winner_user_id):
                raise ValidationError(
                    "The winner must be a party to the challenge",
                    {"winner_user_id": outcome.winner_user_id},
                )
            return self._plan_completion(operation, record, outcome.winner_user_id, None)

        now = self.clock()
        tie_details = TieDetails(
            reason=outcome.reason,
            votes_for_challenger=outcome.votes_for_challenger,
            votes_for_challengee=outcome.votes_for_challengee,
        )
        changes = {"status": ChallengeStatus.TIE_RESOLVED, "tie_details": tie_details, "resolved_at": now}
        steps = ()
        data = {"reason": outcome.reason.value}
        if record.is_wagered:
            breakdown = tie_refund_breakdown(record.wager_amount, record.wager_token, self.fee_rate)
            changes["refund_breakdown"] = breakdown
            parties = (
                Payee(user_id=record.from_user_id, amount=breakdown.challenger_refund),
                Payee(user_id=record.to_user_id, amount=breakdown.challengee_refund),
            )
            steps = (
                EscrowStep(
                    kind=LedgerEntryKind.SPLIT_REFUND,
                    amount=breakdown.challenger_refund + breakdown.challengee_refund,
                    token=record.wager_token,
                    parties=parties,
                ),
            )
            if breakdown.atlas_fee_collected > 0:
                steps += (
                    EscrowStep(
                        kind=LedgerEntryKind.FEE,
                        amount=breakdown.atlas_fee_collected,
                        token=record.wager_token,
                        user_id=PLATFORM_ACCOUNT_ID,
                    ),
                )
            data.update(
                challenger_refund=breakdown.challenger_refund,
                challengee_refund=breakdown.challengee_refund,
                atlas_fee_collected=breakdown.atlas_fee_collected,
                wager_token=record.wager_token,
            )
        target = record.evolve(**changes)
        event = make_event(
            EventType.CHALLENGE_TIED, target, now, None, (record.from_user_id, record.to_user_id), **data,
        )
        return Transition(operation, record, target, (event,), steps)

    # Expiry

    def is_expirable(self, record: ChallengeRecord) -> bool:
        if record.status == ChallengeStatus.PENDING:
            return True
        return (
            self.expire_accepted
            and record.status == ChallengeStatus.ACCEPTED
            and record.response_data is None
        )

    def plan_check_expiry(self, record: ChallengeRecord, now: Optional[datetime] = None) -> Transition:
        operation = "check_expiry"
        now = now or self.clock()
        if not self.is_expirable(record) or now <= record.expires_at:
            return noop(operation, record)

        target = record.evolve(status=ChallengeStatus.EXPIRED, latest_offer=None, resolved_at=now)
        event = make_event(
            EventType.CHALLENGE_EXPIRED, target, now, None, (record.from_user_id, record.to_user_id),
            previous_status=record.status.value,
        )
        return Transition(operation, record, target, (event,), refund_steps(record))

    # Operations

    async def create(self, from_user_id: str, to_user_id: str, challenge_text: str, wager_amount=Decimal("0"),
                     wager_token: Optional[str] = None, expiry_days: Optional[int] = None) -> Transition:
        return await self.settle(self.plan_create(from_user_id, to_user_id, challenge_text, wager_amount, wager_token, expiry_days))

    async def accept(self, record: ChallengeRecord, acting_user_id: str) -> Transition:
        return await self.settle(self.plan_accept(record, acting_user_id))

    async def decline(self, record: ChallengeRecord, acting_user_id: str) -> Transition:
        return await self.settle(self.plan_decline(record, acting_user_id))

    async def propose_counter(self, record: ChallengeRecord, proposing_user_id: str, terms: ProposedTerms) -> Transition:
        return await self.settle(self.plan_propose_counter(record, proposing_user_id, terms))

    async def accept_counter(self, record: ChallengeRecord, accepting_user_id: str) -> Transition:
        return await self.settle(self.plan_accept_counter(record, accepting_user_id))

    async def submit_response(self, record: ChallengeRecord, acting_user_id: str, response: ResponseData) -> Transition:
        return await self.settle(self.plan_submit_response(record, acting_user_id, response))

    async def set_response_visibility(self, record: ChallengeRecord, acting_user_id: str, is_public: bool) -> Transition:
        return await self.settle(self.plan_set_response_visibility(record, acting_user_id, is_public))

    async def approve_response(self, record: ChallengeRecord, acting_user_id: str, approved: bool,
                               comment: Optional[str] = None) -> Transition:
        return await self.settle(self.plan_approve_response(record, acting_user_id, approved, comment))

    async def request_retry(self, record: ChallengeRecord, acting_user_id: str, comment: str) -> Transition:
        return await self.settle(self.plan_request_retry(record, acting_user_id, comment))

    async def initiate_dispute(self, record: ChallengeRecord, acting_user_id: str, comment: Optional[str] = None) -> Transition:
        return await self.settle(self.plan_initiate_dispute(record, acting_user_id, comment))

    async def resolve_dispute(self, record: ChallengeRecord, outcome: DisputeOutcome) -> Transition:
        return await self.settle(self.plan_resolve_dispute(record, outcome))

    async def check_expiry(self, record: ChallengeRecord, now: Optional[datetime] = None) -> Transition:
        return await self.settle(self.plan_check_expiry(record, now))
