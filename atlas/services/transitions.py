"""Building blocks shared by the negotiation engine and the state machine.

A lifecycle operation is planned first and settled second. Planning is pure:
it validates the actor and status, builds the target record, lists the escrow
steps that must succeed for the target to become true, and the events to
publish. Settling runs those steps through the escrow client and folds each
result into the record.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Tuple

from ..config import ALLOWED_EXPIRY_DAYS, PLATFORM_ACCOUNT_ID
from ..errors import EscrowError, InvalidTransitionError, ValidationError
from ..models.challenge import (
    ChallengeRecord,
    ChallengeStatus,
    LedgerEntry,
    LedgerEntryKind,
    StakeDeposit,
    utcnow,
)
from ..models.escrow import EscrowHandle, Payee
from ..models.events import ChallengeEvent, EventType
from .escrow import EscrowClient
from .tokens import decimal_places, get_token

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class EscrowStep:
    kind: LedgerEntryKind
    amount: Decimal
    token: Optional[str]
    user_id: Optional[str] = None
    parties: Tuple[Payee, ...] = ()
    # The stake a REFUND step returns
    stake: Optional[StakeDeposit] = None


@dataclass(frozen=True)
class Transition:
    operation: str
    origin: ChallengeRecord
    record: ChallengeRecord
    events: Tuple[ChallengeEvent, ...] = ()
    steps: Tuple[EscrowStep, ...] = ()
    actor_user_id: Optional[str] = None

    @property
    def moves_funds(self) -> bool:
        return bool(self.steps)

    @property
    def is_noop(self) -> bool:
        return self.record == self.origin and not self.steps


def noop(operation: str, record: ChallengeRecord, actor_user_id: Optional[str] = None) -> Transition:
    return Transition(operation=operation, origin=record, record=record, actor_user_id=actor_user_id)


def require(condition: bool, operation: str, record: ChallengeRecord, acting_user_id: Optional[str], reason: str = "") -> None:
    if not condition:
        raise InvalidTransitionError(operation, record.status.value, acting_user_id, reason)


def make_event(
    event_type: EventType,
    record: ChallengeRecord,
    occurred_at: datetime,
    actor_user_id: Optional[str] = None,
    recipients: Tuple[str, ...] = (),
    **data,
) -> ChallengeEvent:
    return ChallengeEvent(
        type=event_type,
        challenge_id=record.id,
        actor_user_id=actor_user_id,
        recipient_user_ids=recipients,
        occurred_at=occurred_at,
        data={k: (str(v) if isinstance(v, Decimal) else v) for k, v in data.items()},
    )


def to_amount(value) -> Decimal:
    if isinstance(value, float):
        raise ValidationError("Amounts must be exact decimals, not floats")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount


def validate_terms(challenge_text: Optional[str], wager_amount, wager_token: Optional[str], expiry_days: int) -> Tuple[str, Decimal, Optional[str]]:
    """Check a set of challenge terms and return them normalized."""
    if not challenge_text or not challenge_text.strip():
        raise ValidationError("Challenge description is required")

    wager = to_amount(wager_amount)
    if wager < 0:
        raise ValidationError("Wager amount cannot be negative", {"wager_amount": str(wager)})

    token = None
    if wager > 0:
        if not wager_token:
            raise ValidationError("A wager needs a token")
        config = get_token(wager_token)
        if config is None:
            raise ValidationError(f"Unsupported token: {wager_token}", {"wager_token": wager_token})
        if wager < config.min_wager:
            raise ValidationError(
                f"Wager must be at least {config.min_wager} {config.symbol}",
                {"wager_amount": str(wager), "min_wager": str(config.min_wager)},
            )
        if decimal_places(wager) > config.decimals:
            raise ValidationError(
                f"{config.symbol} supports at most {config.decimals} decimal places",
                {"wager_amount": str(wager)},
            )
        token = config.symbol

    if expiry_days not in ALLOWED_EXPIRY_DAYS:
        raise ValidationError(
            f"Expiry must be one of {', '.join(str(d) for d in ALLOWED_EXPIRY_DAYS)} days",
            {"expiry_days": expiry_days},
        )
    return challenge_text.strip(), wager, token


def refund_steps(record: ChallengeRecord) -> Tuple[EscrowStep, ...]:
    """Return every stake still held in escrow to the party that deposited it."""
    return tuple(
        EscrowStep(kind=LedgerEntryKind.REFUND, amount=stake.amount, token=stake.token, user_id=stake.user_id, stake=stake)
        for stake in record.active_deposits
    )


def stake_steps(record: ChallengeRecord, wager: Decimal, token: Optional[str]) -> Tuple[EscrowStep, ...]:
    """Steps that leave both parties staked at exactly ``wager`` ``token``.

    A stake made under different terms is refunded in full and re-deposited.
    With no wager every held stake is refunded.
    """
    if wager <= 0:
        return refund_steps(record)

    steps = []
    for user_id in (record.from_user_id, record.to_user_id):
        stake = record.active_deposit_for(user_id)
        if stake is not None and stake.amount == wager and stake.token == token:
            continue
        if stake is not None:
            steps.append(EscrowStep(kind=LedgerEntryKind.REFUND, amount=stake.amount, token=stake.token, user_id=user_id, stake=stake))
        steps.append(EscrowStep(kind=LedgerEntryKind.DEPOSIT, amount=wager, token=token, user_id=user_id))
    return tuple(steps)


def settlement_steps(winner_user_id: str, payout: Decimal, fee: Decimal, token: Optional[str]) -> Tuple[EscrowStep, ...]:
    steps = [EscrowStep(kind=LedgerEntryKind.PAYOUT, amount=payout, token=token, user_id=winner_user_id)]
    if fee > 0:
        steps.append(EscrowStep(kind=LedgerEntryKind.FEE, amount=fee, token=token, user_id=PLATFORM_ACCOUNT_ID))
    return tuple(steps)


def _escrow_is_open(record: ChallengeRecord) -> bool:
    return record.status not in (ChallengeStatus.PENDING, ChallengeStatus.NEGOTIATING)


def attach_escrow_account(record: ChallengeRecord) -> ChallengeRecord:
    """Point ``escrow_account`` at the pot once both stakes are held."""
    if record.escrow_account or not record.is_wagered or not _escrow_is_open(record):
        return record
    challenger = record.active_deposit_for(record.from_user_id)
    challengee = record.active_deposit_for(record.to_user_id)
    if challenger is None or challengee is None:
        return record
    return record.evolve(
        escrow_account=challengee.escrow_id,
        escrow_data=record.escrow_data or {"escrow_id": challengee.escrow_id},
    )


def fold_step(record: ChallengeRecord, step: EscrowStep, result, reference: str, now: datetime) -> ChallengeRecord:
    """Record the outcome of one successful escrow call."""
    if step.kind == LedgerEntryKind.DEPOSIT:
        handle: EscrowHandle = result
        stake = StakeDeposit(
            user_id=step.user_id,
            amount=step.amount,
            token=step.token,
            escrow_id=handle.escrow_id,
            reference=reference,
            deposited_at=now,
        )
        entry = LedgerEntry(
            kind=step.kind,
            escrow_id=handle.escrow_id,
            receipt_id=reference,
            amount=step.amount,
            token=step.token,
            user_id=step.user_id,
            reference=reference,
            recorded_at=now,
        )
        changes = {"deposits": record.deposits + (stake,), "escrow_ledger": record.escrow_ledger + (entry,)}
        if _escrow_is_open(record) and step.user_id == record.to_user_id:
            changes["escrow_account"] = handle.escrow_id
            changes["escrow_data"] = {"escrow_id": handle.escrow_id, **handle.data}
        return record.evolve(**changes)

    entry = LedgerEntry(
        kind=step.kind,
        escrow_id=result.escrow_id,
        receipt_id=result.receipt_id,
        amount=step.amount,
        token=step.token,
        user_id=step.user_id,
        reference=reference,
        recorded_at=now,
    )
    changes = {"escrow_ledger": record.escrow_ledger + (entry,)}
    if step.kind == LedgerEntryKind.REFUND:
        changes["deposits"] = tuple(
            d.model_copy(update={"refunded_at": now}) if d == step.stake else d
            for d in record.deposits
        )
    return record.evolve(**changes)


class Settler:
    """Runs a planned transition's escrow steps and folds their results in."""

    def __init__(self, escrow: EscrowClient, clock: Clock = utcnow):
        self.escrow = escrow
        self.clock = clock

    @staticmethod
    def reference(transition: Transition, step: EscrowStep) -> str:
        # Stable across retries of the same logical attempt so the gateway can de-duplicate
        origin = transition.origin
        party = step.user_id or "pot"
        return f"{origin.id}:{transition.operation}:{len(origin.negotiation_history)}:{step.kind.value}:{party}"

    def _pot_handle(self, record: ChallengeRecord) -> EscrowHandle:
        if not record.escrow_account:
            raise EscrowError("Challenge has no escrow account", "release")
        data = {k: v for k, v in (record.escrow_data or {}).items() if k != "escrow_id"}
        return EscrowHandle(escrow_id=record.escrow_account, data=data)

    async def _run(self, step: EscrowStep, record: ChallengeRecord, reference: str):
        if step.kind == LedgerEntryKind.DEPOSIT:
            return await self.escrow.deposit(step.user_id, step.amount, step.token, reference)
        if step.kind == LedgerEntryKind.REFUND:
            handle = EscrowHandle(escrow_id=step.stake.escrow_id)
            return await self.escrow.refund_full(handle, step.user_id, step.amount, step.token, reference)
        if step.kind == LedgerEntryKind.SPLIT_REFUND:
            return await self.escrow.refund_split(self._pot_handle(record), list(step.parties), step.token, reference)
        return await self.escrow.release(self._pot_handle(record), step.user_id, step.amount, step.token, reference)

    async def settle(self, transition: Transition) -> Transition:
        target = transition.record
        ledger = transition.origin
        settled = {entry.reference for entry in transition.origin.escrow_ledger}
        for step in transition.steps:
            reference = self.reference(transition, step)
            if reference in settled:
                # Completed by an earlier attempt that failed on a later step
                logger.info("Challenge %s: %s already settled (reference=%s)", transition.origin.id, step.kind.value, reference)
                continue
            try:
                result = await self._run(step, target, reference)
            except EscrowError as exc:
                if ledger != transition.origin:
                    exc.ledger_record = ledger
                logger.warning(
                    "Challenge %s: %s aborted at %s step, status stays %s",
                    transition.origin.id, transition.operation, step.kind.value, transition.origin.status.value,
                )
                raise
            now = self.clock()
            target = fold_step(target, step, result, reference, now)
            ledger = fold_step(ledger, step, result, reference, now)
        return replace(transition, record=attach_escrow_account(target))
