import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import ANY, AsyncMock

import pytest

from atlas.config import PLATFORM_ACCOUNT_ID
from atlas.errors import EscrowError, InvalidTransitionError, ValidationError
from atlas.models.challenge import (
    ChallengeStatus,
    DisputeOutcome,
    LedgerEntryKind,
    ResponseData,
    TieReason,
    VideoDescriptor,
)
from atlas.models.escrow import EscrowHandle, Payee, Receipt
from atlas.models.events import EventType
from atlas.services.escrow import EscrowClient
from atlas.services.state_machine import ChallengeStateMachine

from conftest import CHALLENGEE, CHALLENGER, NOW

pytestmark = pytest.mark.anyio


def mock_gateway():
    gateway = AsyncMock()
    gateway.deposit.return_value = EscrowHandle(escrow_id="escrow-pot", data={"chain": "solana"})
    gateway.release.return_value = Receipt(receipt_id="r-release", escrow_id="escrow-pot")
    gateway.refund_full.return_value = Receipt(receipt_id="r-refund", escrow_id="escrow-alice-seed")
    gateway.refund_split.return_value = Receipt(receipt_id="r-split", escrow_id="escrow-pot")
    return gateway


def machine_for(gateway, **kwargs):
    return ChallengeStateMachine(EscrowClient(gateway, timeout=1), clock=lambda: NOW, **kwargs)


# Creation

async def test_create_collects_the_challenger_stake(machine, gateway):
    transition = await machine.create(CHALLENGER, CHALLENGEE, "  Run 5k under 25 minutes ", Decimal("5"), "usdc", 3)
    record = transition.record

    assert record.status == ChallengeStatus.PENDING
    assert record.challenge_text == "Run 5k under 25 minutes"
    assert record.wager_token == "USDC"
    assert record.expires_at == NOW + timedelta(days=3)
    assert record.escrow_account is None
    assert [d.user_id for d in record.active_deposits] == [CHALLENGER]
    assert gateway.calls_to("deposit") == [
        {"user_id": CHALLENGER, "amount": Decimal("5"), "token": "USDC", "reference": ANY}
    ]
    assert [e.type for e in transition.events] == [EventType.CHALLENGE_CREATED]
    assert transition.events[0].recipient_user_ids == (CHALLENGEE,)


async def test_create_without_wager_moves_no_money(machine, gateway):
    transition = await machine.create(CHALLENGER, CHALLENGEE, "Cold shower")
    assert transition.record.wager_token is None
    assert transition.record.expiry_days == 7
    assert gateway.calls == []


@pytest.mark.parametrize(
    "kwargs",
    [
        {"to_user_id": CHALLENGER},
        {"challenge_text": "   "},
        {"wager_amount": Decimal("-1"), "wager_token": "USDC"},
        {"wager_amount": Decimal("5")},
        {"wager_amount": Decimal("5"), "wager_token": "DOGE"},
        {"wager_amount": Decimal("0.1"), "wager_token": "USDC"},
        {"wager_amount": Decimal("1.0000001"), "wager_token": "USDC"},
        {"wager_amount": 0.5, "wager_token": "USDC"},
        {"expiry_days": 5},
    ],
)
async def test_create_rejects_malformed_terms(machine, gateway, kwargs):
    args = {"from_user_id": CHALLENGER, "to_user_id": CHALLENGEE, "challenge_text": "Plank for 3 minutes"}
    args.update(kwargs)
    with pytest.raises(ValidationError):
        await machine.create(**args)
    assert gateway.calls == []


# Accept / decline

async def test_accept_deposits_the_challengee_stake_once(make_record):
    gateway = mock_gateway()
    record = make_record(wager="5", token="USDC")

    transition = await machine_for(gateway).accept(record, CHALLENGEE)

    gateway.deposit.assert_awaited_once_with(CHALLENGEE, Decimal("5"), "USDC", reference=ANY)
    assert transition.record.status == ChallengeStatus.ACCEPTED
    assert transition.record.accepted_at == NOW
    assert transition.record.escrow_account == "escrow-pot"
    assert transition.record.escrow_data == {"escrow_id": "escrow-pot", "chain": "solana"}
    assert [e.type for e in transition.events] == [EventType.CHALLENGE_ACCEPTED]


async def test_accept_by_anyone_but_the_challengee_is_rejected(make_record):
    gateway = mock_gateway()
    record = make_record(wager="5", token="USDC")

    with pytest.raises(InvalidTransitionError) as excinfo:
        await machine_for(gateway).accept(record, CHALLENGER)

    assert excinfo.value.current_status == "pending"
    assert excinfo.value.operation == "accept"
    assert record.status == ChallengeStatus.PENDING
    gateway.deposit.assert_not_awaited()


async def test_accept_under_negotiation_goes_through_the_counter_offer(machine, make_record):
    with pytest.raises(InvalidTransitionError):
        await machine.accept(make_record(ChallengeStatus.NEGOTIATING), CHALLENGEE)


async def test_accept_escrow_failure_leaves_the_challenge_pending(make_record):
    gateway = mock_gateway()
    gateway.deposit.side_effect = RuntimeError("insufficient balance")
    record = make_record(wager="5", token="USDC")

    with pytest.raises(EscrowError) as excinfo:
        await machine_for(gateway).accept(record, CHALLENGEE)

    assert excinfo.value.operation == "deposit"
    assert excinfo.value.amount == Decimal("5")
    assert excinfo.value.ledger_record is None


async def test_escrow_timeout_is_a_failure(make_record):
    class SlowGateway:
        async def deposit(self, user_id, amount, token, *, reference):
            await asyncio.sleep(5)

    machine = ChallengeStateMachine(EscrowClient(SlowGateway(), timeout=0.01), clock=lambda: NOW)
    with pytest.raises(EscrowError, match="timed out"):
        await machine.accept(make_record(wager="5", token="USDC"), CHALLENGEE)


async def test_decline_pending_refunds_the_challenger(machine, gateway, make_record):
    transition = await machine.decline(make_record(wager="5", token="USDC"), CHALLENGEE)

    assert transition.record.status == ChallengeStatus.DECLINED
    assert transition.record.resolved_at == NOW
    assert transition.record.active_deposits == ()
    assert [c["user_id"] for c in gateway.calls_to("refund_full")] == [CHALLENGER]
    assert gateway.calls_to("release") == []


async def test_only_the_challengee_declines_a_pending_challenge(machine, make_record):
    with pytest.raises(InvalidTransitionError):
        await machine.decline(make_record(), CHALLENGER)


async def test_accepted_challenges_cannot_be_declined(machine, make_record):
    with pytest.raises(InvalidTransitionError):
        await machine.decline(make_record(ChallengeStatus.ACCEPTED), CHALLENGEE)


# Responses

async def test_submit_video_response(machine, make_record):
    video = VideoDescriptor(uri="https://cdn.example/v/1.mp4", duration_seconds=12.5, file_size_bytes=2_000_000)
    transition = await machine.submit_response(
        make_record(ChallengeStatus.ACCEPTED), CHALLENGEE, ResponseData.from_video(video),
    )
    record = transition.record

    assert record.status == ChallengeStatus.RESPONSE_SUBMITTED
    assert record.response_submitted_at == NOW
    assert record.response_data.video_url == "https://cdn.example/v/1.mp4"
    assert record.response_data.submitter_user_id == CHALLENGEE
    assert record.response_data.submitted_at == NOW


@pytest.mark.parametrize(
    "response",
    [
        ResponseData(response_type="video", duration_seconds=10),
        ResponseData(response_type="video", video_url="https://cdn.example/v/1.mp4"),
        ResponseData(response_type="video", video_url="https://cdn.example/v/1.mp4", duration_seconds=0),
        ResponseData(response_type="video", video_url="https://cdn.example/v/1.mp4", duration_seconds=31),
        ResponseData(response_type="text", text_content="  "),
        ResponseData(response_type="text"),
    ],
)
async def test_submit_rejects_incomplete_proof(machine, make_record, response):
    with pytest.raises(ValidationError):
        await machine.submit_response(make_record(ChallengeStatus.ACCEPTED), CHALLENGEE, response)


async def test_only_the_challengee_responds(machine, make_record):
    with pytest.raises(InvalidTransitionError):
        await machine.submit_response(make_record(ChallengeStatus.ACCEPTED), CHALLENGER, ResponseData.from_text("done"))


async def test_response_awaiting_review_cannot_be_replaced(machine, make_record):
    with pytest.raises(InvalidTransitionError):
        await machine.submit_response(
            make_record(ChallengeStatus.RESPONSE_SUBMITTED), CHALLENGEE, ResponseData.from_text("again"),
        )


async def test_resubmission_after_a_retry(machine, make_record):
    record = make_record(ChallengeStatus.RESPONSE_SUBMITTED, retry_count=1)
    transition = await machine.submit_response(record, CHALLENGEE, ResponseData.from_text("better attempt"))
    assert transition.record.response_data.text_content == "better attempt"

    retry = make_record(ChallengeStatus.RETRY_REQUESTED, retry_count=1)
    transition = await machine.submit_response(retry, CHALLENGEE, ResponseData.from_text("third time"))
    assert transition.record.status == ChallengeStatus.RESPONSE_SUBMITTED


async def test_response_visibility(machine, make_record):
    record = make_record(ChallengeStatus.RESPONSE_SUBMITTED)

    transition = await machine.set_response_visibility(record, CHALLENGEE, True)
    assert transition.record.response_data.is_public is True
    assert transition.record.status == ChallengeStatus.RESPONSE_SUBMITTED
    assert [e.type for e in transition.events] == [EventType.RESPONSE_VISIBILITY_CHANGED]

    unchanged = await machine.set_response_visibility(record, CHALLENGEE, False)
    assert unchanged.is_noop

    with pytest.raises(InvalidTransitionError):
        await machine.set_response_visibility(record, CHALLENGER, True)
    with pytest.raises(InvalidTransitionError):
        await machine.set_response_visibility(make_record(ChallengeStatus.COMPLETED), CHALLENGEE, True)


# Review

async def test_approve_pays_the_winner_and_the_platform(make_record):
    gateway = mock_gateway()
    record = make_record(ChallengeStatus.RESPONSE_SUBMITTED, wager="10", token="USDC")

    transition = await machine_for(gateway).approve_response(record, CHALLENGER, True)

    assert gateway.release.await_count == 2
    payout, fee = gateway.release.await_args_list
    assert payout.args[1:] == (CHALLENGEE, Decimal("19.5"))
    assert fee.args[1:] == (PLATFORM_ACCOUNT_ID, Decimal("0.5"))
    assert payout.args[0].escrow_id == "escrow-pot"

    record = transition.record
    assert record.status == ChallengeStatus.COMPLETED
    assert record.winner_user_id == CHALLENGEE
    assert record.resolved_at == NOW
    assert [e.kind for e in record.escrow_ledger] == [LedgerEntryKind.PAYOUT, LedgerEntryKind.FEE]


async def test_approve_without_wager(machine, gateway, make_record):
    transition = await machine.approve_response(make_record(ChallengeStatus.RESPONSE_SUBMITTED), CHALLENGER, True)
    assert transition.record.status == ChallengeStatus.COMPLETED
    assert gateway.calls == []


async def test_rejecting_a_response_requests_a_retry(machine, gateway, make_record):
    record = make_record(ChallengeStatus.RESPONSE_SUBMITTED, wager="10", token="USDC")
    transition = await machine.approve_response(record, CHALLENGER, False, "Form was off")

    assert transition.record.status == ChallengeStatus.RETRY_REQUESTED
    assert transition.record.retry_comment == "Form was off"
    assert transition.record.retry_count == 1
    assert gateway.calls == []


async def test_request_retry_needs_a_comment(machine, make_record):
    record = make_record(ChallengeStatus.RESPONSE_SUBMITTED)
    with pytest.raises(ValidationError):
        await machine.request_retry(record, CHALLENGER, "   ")
    # Actor and status are checked before the payload
    with pytest.raises(InvalidTransitionError):
        await machine.request_retry(record, CHALLENGEE, "")


async def test_only_the_challenger_reviews(machine, make_record):
    record = make_record(ChallengeStatus.RESPONSE_SUBMITTED)
    with pytest.raises(InvalidTransitionError):
        await machine.approve_response(record, CHALLENGEE, True)
    with pytest.raises(InvalidTransitionError):
        await machine.initiate_dispute(record, CHALLENGEE)


async def test_partial_settlement_keeps_completed_steps_on_the_ledger(machine, gateway, make_record):
    gateway.fail_on.add(("release", PLATFORM_ACCOUNT_ID))
    record = make_record(ChallengeStatus.RESPONSE_SUBMITTED, wager="10", token="USDC")

    with pytest.raises(EscrowError) as excinfo:
        await machine.approve_response(record, CHALLENGER, True)

    ledger = excinfo.value.ledger_record
    assert ledger.status == ChallengeStatus.RESPONSE_SUBMITTED
    assert [e.kind for e in ledger.escrow_ledger] == [LedgerEntryKind.PAYOUT]


# Disputes

async def test_dispute_then_tie_splits_the_pot(machine, gateway, make_record):
    record = make_record(ChallengeStatus.RESPONSE_SUBMITTED, wager="8", token="USDC")
    disputed = (await machine.initiate_dispute(record, CHALLENGER, "That was not 50")).record
    assert disputed.status == ChallengeStatus.DISPUTED
    assert disputed.dispute_comment == "That was not 50"

    transition = await machine.resolve_dispute(disputed, DisputeOutcome.tied(TieReason.EQUAL_VOTES, votes_for_challenger=3, votes_for_challengee=3))
    tied = transition.record

    assert tied.status == ChallengeStatus.TIE_RESOLVED
    assert tied.refund_breakdown.challenger_refund == Decimal("7.8")
    assert tied.refund_breakdown.challengee_refund == Decimal("7.8")
    assert tied.refund_breakdown.atlas_fee_collected == Decimal("0.4")
    assert tied.tie_details.reason == TieReason.EQUAL_VOTES
    assert tied.tie_details.votes_for_challenger == 3

    (split,) = gateway.calls_to("refund_split")
    assert split["parties"] == [
        Payee(user_id=CHALLENGER, amount=Decimal("7.8")),
        Payee(user_id=CHALLENGEE, amount=Decimal("7.8")),
    ]
    assert [(c["user_id"], c["amount"]) for c in gateway.calls_to("release")] == [(PLATFORM_ACCOUNT_ID, Decimal("0.4"))]


async def test_tie_without_wager(machine, gateway, make_record):
    transition = await machine.resolve_dispute(make_record(ChallengeStatus.DISPUTED), DisputeOutcome.tied(TieReason.NO_VOTES))
    assert transition.record.status == ChallengeStatus.TIE_RESOLVED
    assert transition.record.refund_breakdown is None
    assert transition.record.tie_details.reason == TieReason.NO_VOTES
    assert gateway.calls == []


async def test_dispute_won_by_the_challenger(machine, gateway, make_record):
    record = make_record(ChallengeStatus.DISPUTED, wager="10", token="USDC")
    transition = await machine.resolve_dispute(record, DisputeOutcome.winner(CHALLENGER))

    assert transition.record.status == ChallengeStatus.COMPLETED
    assert transition.record.winner_user_id == CHALLENGER
    assert gateway.calls_to("release")[0]["user_id"] == CHALLENGER
    assert gateway.calls_to("release")[0]["amount"] == Decimal("19.5")


async def test_dispute_winner_must_be_a_party(machine, make_record):
    with pytest.raises(ValidationError):
        await machine.resolve_dispute(make_record(ChallengeStatus.DISPUTED), DisputeOutcome.winner("mallory"))


async def test_resolve_requires_a_dispute(machine, make_record):
    with pytest.raises(InvalidTransitionError):
        await machine.resolve_dispute(make_record(ChallengeStatus.RESPONSE_SUBMITTED), DisputeOutcome.winner(CHALLENGEE))


def test_dispute_outcome_is_a_winner_or_a_tie():
    with pytest.raises(ValueError):
        DisputeOutcome()
    with pytest.raises(ValueError):
        DisputeOutcome(winner_user_id=CHALLENGEE, tie=True, reason=TieReason.NO_VOTES)
    with pytest.raises(ValueError):
        DisputeOutcome(tie=True)


# Expiry

async def test_expiry_refunds_the_challenger_and_is_idempotent(machine, gateway, make_record):
    record = make_record(wager="5", token="USDC")
    later = record.expires_at + timedelta(seconds=1)

    expired = (await machine.check_expiry(record, later)).record
    assert expired.status == ChallengeStatus.EXPIRED
    assert expired.resolved_at == later
    assert [c["user_id"] for c in gateway.calls_to("refund_full")] == [CHALLENGER]

    for _ in range(2):
        transition = await machine.check_expiry(expired, later + timedelta(days=1))
        assert transition.is_noop
        assert transition.record == expired
    assert len(gateway.calls_to("refund_full")) == 1


async def test_expiry_before_deadline_is_a_noop(machine, make_record):
    record = make_record()
    assert (await machine.check_expiry(record, record.expires_at)).is_noop


async def test_accepted_challenges_expire_only_when_enabled(gateway, make_record):
    record = make_record(ChallengeStatus.ACCEPTED, wager="5", token="USDC")
    later = record.expires_at + timedelta(hours=1)

    default = machine_for(gateway, expire_accepted=False)
    assert (await default.check_expiry(record, later)).is_noop

    strict = machine_for(gateway, expire_accepted=True)
    expired = (await strict.check_expiry(record, later)).record
    assert expired.status == ChallengeStatus.EXPIRED
    assert sorted(c["user_id"] for c in gateway.calls_to("refund_full")) == sorted([CHALLENGER, CHALLENGEE])

    responded = make_record(ChallengeStatus.RESPONSE_SUBMITTED)
    assert (await strict.check_expiry(responded, later)).is_noop


@pytest.mark.parametrize("status", [ChallengeStatus.COMPLETED, ChallengeStatus.DECLINED, ChallengeStatus.TIE_RESOLVED])
async def test_terminal_records_accept_no_operations(machine, make_record, status):
    record = make_record(status)
    with pytest.raises(InvalidTransitionError):
        await machine.accept(record, CHALLENGEE)
    with pytest.raises(InvalidTransitionError):
        await machine.decline(record, CHALLENGEE)
    with pytest.raises(InvalidTransitionError):
        await machine.submit_response(record, CHALLENGEE, ResponseData.from_text("late"))
    with pytest.raises(InvalidTransitionError):
        await machine.approve_response(record, CHALLENGER, True)
