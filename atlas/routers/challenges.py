from fastapi import APIRouter, Depends
from pydantic import BaseModel, BeforeValidator
from typing import Annotated, Optional, List
from decimal import Decimal

from ..auth import get_current_user_id, verify_resolver_token
from ..dependencies import get_challenge_service
from ..models.challenge import (
    ChallengeRecord,
    DisputeOutcome,
    NegotiationStatus,
    ProposedTerms,
    ResponseData,
    ResponseType,
)
from ..services.challenges import ChallengeService
from ..services.money import PayoutBreakdown
from ..services.perspective import Action, Perspective, available_actions, direction, negotiation_status_for, perspective

router = APIRouter(
    prefix="/challenges",
    tags=["Challenges"]
)


class ChallengeView(ChallengeRecord):
    """A challenge as seen by the requesting user."""
    perspective: Perspective
    direction: Optional[str] = None
    viewer_negotiation_status: NegotiationStatus
    available_actions: List[Action] = []


def to_view(record: ChallengeRecord, user_id: str) -> ChallengeView:
    return ChallengeView(
        **dict(record),
        perspective=perspective(record, user_id),
        direction=direction(record, user_id),
        viewer_negotiation_status=negotiation_status_for(record, user_id),
        available_actions=available_actions(record, user_id),
    )


def decimal_string(value):
    # A JSON number has already been parsed as a binary float
    if isinstance(value, (int, float)):
        raise ValueError("amounts must be sent as decimal strings")
    return value


Amount = Annotated[Decimal, BeforeValidator(decimal_string)]


class ChallengeCreate(BaseModel):
    to_user_id: str
    challenge_text: str
    wager_amount: Amount = Decimal("0")
    wager_token: Optional[str] = None
    expiry_days: Optional[int] = None

class CounterOfferCreate(BaseModel):
    challenge_text: str
    wager_amount: Amount = Decimal("0")
    wager_token: Optional[str] = None
    expiry_days: Optional[int] = None
    note: Optional[str] = None

class ResponseCreate(BaseModel):
    response_type: ResponseType
    video_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    file_size_bytes: Optional[int] = None
    text_content: Optional[str] = None
    is_public: bool = False

class VisibilityUpdate(BaseModel):
    is_public: bool

class ApprovalRequest(BaseModel):
    approved: bool = True
    comment: Optional[str] = None
    # Payout the challenger was shown; rejected if it no longer matches
    quoted_payout: Optional[Amount] = None

class RetryRequest(BaseModel):
    comment: str

class DisputeRequest(BaseModel):
    comment: Optional[str] = None

class ApprovalQuote(BaseModel):
    challenge_id: str
    winner_user_id: str
    wager_token: Optional[str]
    total_pot: Optional[Decimal] = None
    atlas_fee: Optional[Decimal] = None
    winner_payout: Optional[Decimal] = None


@router.post("", response_model=ChallengeView, status_code=201)
async def create_challenge(
    challenge: ChallengeCreate,
    service: ChallengeService = Depends(get_challenge_service),
    current_user_id: str = Depends(get_current_user_id)
):
    record = await service.create_challenge(
        from_user_id=current_user_id,
        to_user_id=challenge.to_user_id,
        challenge_text=challenge.challenge_text,
        wager_amount=challenge.wager_amount,
        wager_token=challenge.wager_token,
        expiry_days=challenge.expiry_days,
    )
    return to_view(record, current_user_id)

@router.get("/{challenge_id}", response_model=ChallengeView)
async def get_challenge(
    challenge_id: str,
    service: ChallengeService = Depends(get_challenge_service),
    current_user_id: str = Depends(get_current_user_id)
):
    return to_view(service.get(challenge_id), current_user_id)

@router.post("/{challenge_id}/accept", response_model=ChallengeView)
async def accept_challenge(
    challenge_id: str,
    service: ChallengeService = Depends(get_challenge_service),
    current_user_id: str = Depends(get_current_user_id)
):
    return to_view(await service.accept(challenge_id, current_user_id), current_user_id)

@router.post("/{challenge_id}/decline", response_model=ChallengeView)
async def decline_challenge(
    challenge_id: str,
    service: ChallengeService = Depends(get_challenge_service),
    current_user_id: str = Depends(get_current_user_id)
):
    return to_view(await service.decline(challenge_id, current_user_id), current_user_id)

@router.post("/{challenge_id}/counter-offers", response_model=ChallengeView)
async def propose_counter_offer(
    challenge_id: str,
    offer: CounterOfferCreate,
    service: ChallengeService = Depends(get_challenge_service),
    current_user_id: str = Depends(get_current_user_id)
):
    terms = ProposedTerms(**offer.model_dump())
    return to_view(await service.propose_counter(challenge_id, current_user_id, terms), current_user_id)

@router.post("/{challenge_id}/counter-offers/accept", response_model=ChallengeView)
async def accept_counter_offer(
    challenge_id: str,
    service: ChallengeService = Depends(get_challenge_service),
    current_user_id: str = Depends(get_current_user_id)
):
    return to_view(await service.accept_counter(challenge_id, current_user_id), current_user_id)

@router.post("/{challenge_id}/response", response_model=ChallengeView)
async def submit_response(
    challenge_id: str,
    response: ResponseCreate,
    service: ChallengeService = Depends(get_challenge_service),
    current_user_id: str = Depends(get_current_user_id)
):
    data = ResponseData(**response.model_dump())
    return to_view(await service.submit_response(challenge_id, current_user_id, data), current_user_id)

@router.put("/{challenge_id}/response/visibility", response_model=ChallengeView)
async def set_response_visibility(
    challenge_id: str,
    update: VisibilityUpdate,
    service: ChallengeService = Depends(get_challenge_service),
    current_user_id: str = Depends(get_current_user_id)
):
    record = await service.set_response_visibility(challenge_id, current_user_id, update.is_public)
    return to_view(record, current_user_id)

@router.get("/{challenge_id}/approval-quote", response_model=ApprovalQuote)
async def get_approval_quote(
    challenge_id: str,
    service: ChallengeService = Depends(get_challenge_service),
    current_user_id: str = Depends(get_current_user_id)
):
    preview = service.preview_approval(challenge_id)
    breakdown: Optional[PayoutBreakdown] = preview.breakdown
    return ApprovalQuote(
        challenge_id=preview.challenge_id,
        winner_user_id=preview.winner_user_id,
        wager_token=preview.wager_token,
        total_pot=breakdown.total_pot if breakdown else None,
        atlas_fee=breakdown.atlas_fee if breakdown else None,
        winner_payout=breakdown.winner_payout if breakdown else None,
    )

@router.post("/{challenge_id}/approve", response_model=ChallengeView)
async def approve_response(
    challenge_id: str,
    request: ApprovalRequest,
    service: ChallengeService = Depends(get_challenge_service),
    current_user_id: str = Depends(get_current_user_id)
):
    record = await service.approve_response(
        challenge_id,
        current_user_id,
        request.approved,
        comment=request.comment,
        quoted_payout=request.quoted_payout,
    )
    return to_view(record, current_user_id)

@router.post("/{challenge_id}/retry", response_model=ChallengeView)
async def request_retry(
    challenge_id: str,
    request: RetryRequest,
    service: ChallengeService = Depends(get_challenge_service),
    current_user_id: str = Depends(get_current_user_id)
):
    return to_view(await service.request_retry(challenge_id, current_user_id, request.comment), current_user_id)

@router.post("/{challenge_id}/dispute", response_model=ChallengeView)
async def initiate_dispute(
    challenge_id: str,
    request: DisputeRequest,
    service: ChallengeService = Depends(get_challenge_service),
    current_user_id: str = Depends(get_current_user_id)
):
    return to_view(await service.initiate_dispute(challenge_id, current_user_id, request.comment), current_user_id)

@router.post("/{challenge_id}/dispute-resolution", response_model=ChallengeRecord, dependencies=[Depends(verify_resolver_token)])
async def resolve_dispute(
    challenge_id: str,
    outcome: DisputeOutcome,
    service: ChallengeService = Depends(get_challenge_service)
):
    return await service.resolve_dispute(challenge_id, outcome)
