"""Runs lifecycle operations against stored challenges.

Each operation loads the record, plans the transition and saves the result
with a compare-and-swap on ``version``. A transition that moves money first
saves a claim (``pending_operation``) on the unchanged record, so a racing
operation is turned away before any escrow call is made. The target status is
only saved after every escrow step has succeeded. A claim older than
``CLAIM_TIMEOUT_SECONDS`` belongs to a settlement that died part way and is
taken over by the next operation.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncIterator, Callable, Optional

from ..config import CLAIM_TIMEOUT_SECONDS, MAX_SAVE_RETRIES
from ..errors import AtlasError, ConcurrentModificationError, EscrowError
from ..models.challenge import ChallengeRecord, DisputeOutcome, ProposedTerms, ResponseData
from .notification import NotificationSink, NullNotificationSink
from .repository import ChallengeRepository
from .review import ApprovalPreview, ResponseReviewFlow
from .state_machine import ChallengeStateMachine
from .transitions import Transition

logger = logging.getLogger(__name__)

Planner = Callable[[ChallengeRecord], Transition]


class ChallengeService:
    def __init__(
        self,
        repository: ChallengeRepository,
        machine: ChallengeStateMachine,
        notifications: Optional[NotificationSink] = None,
        max_retries: int = MAX_SAVE_RETRIES,
        claim_timeout: float = CLAIM_TIMEOUT_SECONDS,
    ):
        self.repository = repository
        self.machine = machine
        self.review = ResponseReviewFlow(machine)
        self.notifications = notifications or NullNotificationSink()
        self.max_retries = max_retries
        self.claim_timeout = timedelta(seconds=claim_timeout)

    async def _publish(self, transition: Transition) -> None:
        for event in transition.events:
            try:
                await self.notifications.publish(event)
            except Exception as e:
                logger.warning("Could not publish %s for challenge %s: %s", event.type.value, event.challenge_id, e)

    @staticmethod
    def _log_applied(transition: Transition, saved: ChallengeRecord) -> None:
        logger.info(
            "Challenge %s: %s applied, %s -> %s (version %d)",
            saved.id, transition.operation, transition.origin.status.value, saved.status.value, saved.version,
        )

    async def _settle_and_save(self, transition: Transition) -> ChallengeRecord:
        origin = transition.origin
        claim = origin.evolve(pending_operation=transition.operation, pending_since=self.machine.clock())
        claimed = self.repository.save(claim, origin.version)

        try:
            settled = await self.machine.settle(transition)
        except EscrowError as exc:
            released = (exc.ledger_record or origin).evolve(pending_operation=None, pending_since=None)
            try:
                self.repository.save(released, claimed.version)
            except AtlasError as save_error:
                logger.critical(
                    "Challenge %s: %s failed in escrow and the claim could not be released: %s",
                    origin.id, transition.operation, save_error,
                )
            raise

        final = settled.record.evolve(pending_operation=None, pending_since=None)
        try:
            saved = self.repository.save(final, claimed.version)
        except Exception:
            receipts = [entry.model_dump(mode="json") for entry in final.escrow_ledger[len(origin.escrow_ledger):]]
            logger.critical(
                "Challenge %s: %s moved funds but the record could not be saved; intended status %s, receipts %s",
                origin.id, transition.operation, final.status.value, receipts,
            )
            raise

        self._log_applied(settled, saved)
        await self._publish(settled)
        return saved

    def _take_over(self, record: ChallengeRecord) -> ChallengeRecord:
        """Clear a claim whose settlement stopped without releasing it.

        Steps that did settle are on the gateway under their references, so the
        next attempt of the same operation repeats them safely.
        """
        claimed_at = record.pending_since
        if claimed_at is not None and self.machine.clock() - claimed_at <= self.claim_timeout:
            raise ConcurrentModificationError(record.id, record.version, f"{record.pending_operation} is in progress")

        logger.warning(
            "Challenge %s: taking over abandoned %s claimed at %s",
            record.id, record.pending_operation, claimed_at.isoformat() if claimed_at else "an unknown time",
        )
        released = record.evolve(pending_operation=None, pending_since=None)
        return self.repository.save(released, record.version)

    async def _run(self, challenge_id: str, plan: Planner) -> ChallengeRecord:
        for attempt in range(1, self.max_retries + 1):
            record = self.repository.load(challenge_id)
            if record.is_claimed:
                record = self._take_over(record)

            transition = plan(record)
            if transition.is_noop:
                return record
            if transition.moves_funds:
                return await self._settle_and_save(transition)

            try:
                saved = self.repository.save(transition.record, record.version)
            except ConcurrentModificationError:
                logger.warning(
                    "Challenge %s: version %d was superseded during %s (attempt %d of %d)",
                    challenge_id, record.version, transition.operation, attempt, self.max_retries,
                )
                continue
            self._log_applied(transition, saved)
            await self._publish(transition)
            return saved

        raise ConcurrentModificationError(challenge_id, None, f"gave up after {self.max_retries} attempts")

    async def create_challenge(
        self,
        from_user_id: str,
        to_user_id: str,
        challenge_text: str,
        wager_amount=Decimal("0"),
        wager_token: Optional[str] = None,
        expiry_days: Optional[int] = None,
    ) -> ChallengeRecord:
        transition = self.machine.plan_create(
            from_user_id, to_user_id, challenge_text, wager_amount, wager_token, expiry_days,
        )
        settled = await self.machine.settle(transition)
        try:
            record = self.repository.add(settled.record)
        except Exception:
            if settled.moves_funds:
                logger.critical(
                    "Challenge %s: stake deposited but the challenge could not be stored; receipts %s",
                    settled.record.id, [e.model_dump(mode="json") for e in settled.record.escrow_ledger],
                )
            raise
        logger.info("Challenge %s created by %s (wager %s %s)", record.id, from_user_id, record.wager_amount, record.wager_token)
        await self._publish(settled)
        return record

    def get(self, challenge_id: str) -> ChallengeRecord:
        return self.repository.load(challenge_id)

    def stream_changes(self, challenge_id: str) -> AsyncIterator[ChallengeRecord]:
        return self.repository.stream_changes(challenge_id)

    def preview_approval(self, challenge_id: str) -> ApprovalPreview:
        return self.review.preview_approval(self.repository.load(challenge_id))

    async def accept(self, challenge_id: str, acting_user_id: str) -> ChallengeRecord:
        return await self._run(challenge_id, lambda r: self.machine.plan_accept(r, acting_user_id))

    async def decline(self, challenge_id: str, acting_user_id: str) -> ChallengeRecord:
        return await self._run(challenge_id, lambda r: self.machine.plan_decline(r, acting_user_id))

    async def propose_counter(self, challenge_id: str, acting_user_id: str, terms: ProposedTerms) -> ChallengeRecord:
        return await self._run(challenge_id, lambda r: self.machine.plan_propose_counter(r, acting_user_id, terms))

    async def accept_counter(self, challenge_id: str, acting_user_id: str) -> ChallengeRecord:
        return await self._run(challenge_id, lambda r: self.machine.plan_accept_counter(r, acting_user_id))

    async def decline_negotiation(self, challenge_id: str, acting_user_id: str) -> ChallengeRecord:
        return await self._run(challenge_id, lambda r: self.machine.plan_decline_negotiation(r, acting_user_id))

    async def submit_response(self, challenge_id: str, acting_user_id: str, response: ResponseData) -> ChallengeRecord:
        return await self._run(challenge_id, lambda r: self.machine.plan_submit_response(r, acting_user_id, response))

    async def set_response_visibility(self, challenge_id: str, acting_user_id: str, is_public: bool) -> ChallengeRecord:
        return await self._run(
            challenge_id, lambda r: self.machine.plan_set_response_visibility(r, acting_user_id, is_public),
        )

    async def approve_response(
        self,
        challenge_id: str,
        acting_user_id: str,
        approved: bool,
        comment: Optional[str] = None,
        quoted_payout: Optional[Decimal] = None,
    ) -> ChallengeRecord:
        if approved:
            return await self._run(challenge_id, lambda r: self.review.plan_approve(r, acting_user_id, quoted_payout))
        return await self._run(
            challenge_id, lambda r: self.machine.plan_approve_response(r, acting_user_id, False, comment),
        )

    async def request_retry(self, challenge_id: str, acting_user_id: str, comment: str) -> ChallengeRecord:
        return await self._run(challenge_id, lambda r: self.review.plan_request_retry(r, acting_user_id, comment))

    async def initiate_dispute(self, challenge_id: str, acting_user_id: str, comment: Optional[str] = None) -> ChallengeRecord:
        return await self._run(challenge_id, lambda r: self.review.plan_dispute(r, acting_user_id, comment))

    async def resolve_dispute(self, challenge_id: str, outcome: DisputeOutcome) -> ChallengeRecord:
        return await self._run(challenge_id, lambda r: self.machine.plan_resolve_dispute(r, outcome))

    async def check_expiry(self, challenge_id: str, now: Optional[datetime] = None) -> ChallengeRecord:
        return await self._run(challenge_id, lambda r: self.machine.plan_check_expiry(r, now))
