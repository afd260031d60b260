import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import count

import pytest

from atlas.models.challenge import ChallengeRecord, ChallengeStatus, ResponseData, StakeDeposit
from atlas.models.escrow import EscrowHandle, Receipt
from atlas.services.challenges import ChallengeService
from atlas.services.escrow import EscrowClient
from atlas.services.notification import RecordingNotificationSink
from atlas.services.repository import InMemoryChallengeRepository
from atlas.services.state_machine import ChallengeStateMachine

CHALLENGER = "alice"
CHALLENGEE = "bob"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

OPEN_STATUSES = (ChallengeStatus.PENDING, ChallengeStatus.NEGOTIATING)
RESPONDED_STATUSES = (
    ChallengeStatus.RESPONSE_SUBMITTED,
    ChallengeStatus.RETRY_REQUESTED,
    ChallengeStatus.DISPUTED,
)


class FakeEscrowGateway:
    """In-memory gateway that records every call.

    ``fail_on`` holds operation names, or ``(operation, user_id)`` pairs, that
    should be rejected.
    """

    def __init__(self):
        self.calls = []
        self.fail_on = set()
        self._ids = count(1)

    async def _record(self, operation, user_id=None, **kwargs):
        # Yield like a real network call would
        await asyncio.sleep(0)
        self.calls.append((operation, dict(user_id=user_id, **kwargs)))
        if operation in self.fail_on or (operation, user_id) in self.fail_on:
            raise RuntimeError(f"{operation} rejected by custodian")

    def calls_to(self, operation):
        return [kwargs for name, kwargs in self.calls if name == operation]

    async def deposit(self, user_id, amount, token, *, reference):
        await self._record("deposit", user_id, amount=amount, token=token, reference=reference)
        return EscrowHandle(escrow_id=f"escrow-{user_id}-{next(self._ids)}")

    async def release(self, handle, to_user_id, amount, *, reference):
        await self._record("release", to_user_id, escrow_id=handle.escrow_id, amount=amount, reference=reference)
        return Receipt(receipt_id=f"receipt-{next(self._ids)}", escrow_id=handle.escrow_id)

    async def refund_split(self, handle, parties, *, reference):
        await self._record("refund_split", None, escrow_id=handle.escrow_id, parties=list(parties), reference=reference)
        return Receipt(receipt_id=f"receipt-{next(self._ids)}", escrow_id=handle.escrow_id)

    async def refund_full(self, handle, to_user_id, *, reference):
        await self._record("refund_full", to_user_id, escrow_id=handle.escrow_id, reference=reference)
        return Receipt(receipt_id=f"receipt-{next(self._ids)}", escrow_id=handle.escrow_id)


def stake(user_id, amount, token, escrow_id):
    return StakeDeposit(
        user_id=user_id,
        amount=Decimal(amount),
        token=token,
        escrow_id=escrow_id,
        reference=f"seed:{user_id}",
        deposited_at=NOW - timedelta(days=1),
    )


def build_record(status=ChallengeStatus.PENDING, wager="0", token=None, **changes):
    """A record in ``status`` with the stakes and response that status implies."""
    wager = Decimal(wager)
    fields = dict(
        id="challenge-1",
        from_user_id=CHALLENGER,
        to_user_id=CHALLENGEE,
        challenge_text="50 pushups in one set",
        wager_amount=wager,
        wager_token=token if wager > 0 else None,
        expiry_days=7,
        status=status,
        created_at=NOW - timedelta(days=1),
        expires_at=NOW + timedelta(days=6),
    )
    if wager > 0:
        deposits = (stake(CHALLENGER, wager, token, "escrow-alice-seed"),)
        if status not in OPEN_STATUSES:
            deposits += (stake(CHALLENGEE, wager, token, "escrow-pot"),)
            fields.update(escrow_account="escrow-pot", escrow_data={"escrow_id": "escrow-pot"})
        fields["deposits"] = deposits
    if status not in OPEN_STATUSES:
        fields["accepted_at"] = NOW - timedelta(hours=20)
    if status in RESPONDED_STATUSES:
        fields["response_data"] = ResponseData.from_text("Done, see the gym log").model_copy(
            update={"submitted_at": NOW - timedelta(hours=2), "submitter_user_id": CHALLENGEE}
        )
        fields["response_submitted_at"] = NOW - timedelta(hours=2)
    fields.update(changes)
    return ChallengeRecord(**fields)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def make_record():
    return build_record


@pytest.fixture
def gateway():
    return FakeEscrowGateway()


@pytest.fixture
def machine(gateway):
    return ChallengeStateMachine(EscrowClient(gateway, timeout=1), clock=lambda: NOW)


@pytest.fixture
def repository():
    return InMemoryChallengeRepository()


@pytest.fixture
def sink():
    return RecordingNotificationSink()


@pytest.fixture
def service(repository, machine, sink):
    return ChallengeService(repository, machine, sink)
