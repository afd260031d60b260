from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, Tuple
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChallengeStatus(str, Enum):
    PENDING = "pending"
    NEGOTIATING = "negotiating"
    ACCEPTED = "accepted"
    RESPONSE_SUBMITTED = "response_submitted"
    RETRY_REQUESTED = "retry_requested"
    DISPUTED = "disputed"
    TIE_RESOLVED = "tie_resolved"
    COMPLETED = "completed"
    DECLINED = "declined"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    ChallengeStatus.COMPLETED,
    ChallengeStatus.DECLINED,
    ChallengeStatus.TIE_RESOLVED,
    ChallengeStatus.EXPIRED,
})


class NegotiationStatus(str, Enum):
    NONE = "none"
    PENDING_RESPONSE = "pending_response"
    # Viewer-relative labels, derived for display (see services.perspective)
    COUNTER_OFFER_SENT = "counter_offer_sent"
    COUNTER_OFFER_RECEIVED = "counter_offer_received"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class NegotiationAction(str, Enum):
    COUNTER_OFFER = "counter_offer"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class ResponseType(str, Enum):
    VIDEO = "video"
    TEXT = "text"


class TieReason(str, Enum):
    EQUAL_VOTES = "equal_votes"
    NO_VOTES = "no_votes"


class LedgerEntryKind(str, Enum):
    DEPOSIT = "deposit"
    REFUND = "refund"
    PAYOUT = "payout"
    FEE = "fee"
    SPLIT_REFUND = "split_refund"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ProposedTerms(_Frozen):
    challenge_text: str
    wager_amount: Decimal = Decimal("0")
    wager_token: Optional[str] = None
    expiry_days: Optional[int] = None
    note: Optional[str] = None


class Offer(_Frozen):
    """Snapshot of the most recent counter-offer."""
    challenge_text: str
    wager_amount: Decimal
    wager_token: Optional[str] = None
    expiry_days: int
    author_user_id: str
    note: Optional[str] = None
    sequence: int
    proposed_at: datetime


class NegotiationEntry(_Frozen):
    sequence: int
    action: NegotiationAction
    actor_user_id: str
    offer: Optional[Offer] = None
    note: Optional[str] = None
    occurred_at: datetime


class StakeDeposit(_Frozen):
    user_id: str
    amount: Decimal
    token: str
    escrow_id: str
    reference: str
    deposited_at: datetime
    refunded_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.refunded_at is None


class LedgerEntry(_Frozen):
    """One completed escrow gateway call."""
    kind: LedgerEntryKind
    escrow_id: str
    receipt_id: str
    amount: Decimal
    token: Optional[str] = None
    user_id: Optional[str] = None
    reference: str
    recorded_at: datetime


class VideoDescriptor(_Frozen):
    """What the video capture facility hands back after recording and upload."""
    uri: str
    duration_seconds: float
    file_size_bytes: int


class ResponseData(_Frozen):
    response_type: ResponseType
    video_url: Optional[str] = None
    text_content: Optional[str] = None
    duration_seconds: Optional[float] = None
    file_size_bytes: Optional[int] = None
    is_public: bool = False
    submitted_at: Optional[datetime] = None
    submitter_user_id: Optional[str] = None

    @classmethod
    def from_video(cls, video: VideoDescriptor, is_public: bool = False) -> "ResponseData":
        return cls(
            response_type=ResponseType.VIDEO,
            video_url=video.uri,
            duration_seconds=video.duration_seconds,
            file_size_bytes=video.file_size_bytes,
            is_public=is_public,
        )

    @classmethod
    def from_text(cls, content: str) -> "ResponseData":
        return cls(response_type=ResponseType.TEXT, text_content=content)


class RefundBreakdown(_Frozen):
    challenger_refund: Decimal
    challengee_refund: Decimal
    atlas_fee_collected: Decimal


class TieDetails(_Frozen):
    reason: TieReason
    votes_for_challenger: Optional[int] = None
    votes_for_challengee: Optional[int] = None


class DisputeOutcome(_Frozen):
    """Result reported by the community vote: a winner, or a tie."""
    winner_user_id: Optional[str] = None
    tie: bool = False
    reason: Optional[TieReason] = None
    votes_for_challenger: Optional[int] = None
    votes_for_challengee: Optional[int] = None

    @model_validator(mode="after")
    def check_winner_or_tie(self):
        if self.tie == (self.winner_user_id is not None):
            raise ValueError("A dispute outcome is either a winner or a tie")
        if self.tie and self.reason is None:
            raise ValueError("A tie outcome needs a reason")
        return self

    @classmethod
    def winner(cls, user_id: str) -> "DisputeOutcome":
        return cls(winner_user_id=user_id)

    @classmethod
    def tied(cls, reason: TieReason, **votes) -> "DisputeOutcome":
        return cls(tie=True, reason=reason, **votes)


class ChallengeRecord(_Frozen):
    """A dare between two users, optionally backed by a wager held in escrow.

    Records are immutable: every lifecycle operation produces a new record.
    """
    id: str
    from_user_id: str
    to_user_id: str
    challenge_text: str
    wager_amount: Decimal = Decimal("0")
    wager_token: Optional[str] = None
    expiry_days: int
    status: ChallengeStatus = ChallengeStatus.PENDING
    negotiation_status: NegotiationStatus = NegotiationStatus.NONE
    latest_offer: Optional[Offer] = None
    negotiation_history: Tuple[NegotiationEntry, ...] = ()

    deposits: Tuple[StakeDeposit, ...] = ()
    escrow_account: Optional[str] = None
    escrow_data: Optional[dict] = None
    escrow_ledger: Tuple[LedgerEntry, ...] = ()

    response_data: Optional[ResponseData] = None
    retry_comment: Optional[str] = None
    retry_count: int = 0
    dispute_comment: Optional[str] = None
    winner_user_id: Optional[str] = None
    refund_breakdown: Optional[RefundBreakdown] = None
    tie_details: Optional[TieDetails] = None

    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    response_submitted_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    # Set while a settlement that moves funds is in flight
    pending_operation: Optional[str] = None
    pending_since: Optional[datetime] = None

    version: int = 0

    @property
    def is_wagered(self) -> bool:
        return self.wager_amount > 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_claimed(self) -> bool:
        return self.pending_operation is not None

    @property
    def active_deposits(self) -> Tuple[StakeDeposit, ...]:
        return tuple(d for d in self.deposits if d.is_active)

    def active_deposit_for(self, user_id: str) -> Optional[StakeDeposit]:
        for deposit in self.active_deposits:
            if deposit.user_id == user_id:
                return deposit
        return None

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.from_user_id, self.to_user_id)

    def other_party(self, user_id: str) -> str:
        return self.to_user_id if user_id == self.from_user_id else self.from_user_id

    def evolve(self, **changes) -> "ChallengeRecord":
        return self.model_copy(update=changes)
