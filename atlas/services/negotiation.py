from datetime import timedelta

from ..errors import InvalidStateError
from ..models.challenge import (
    ChallengeRecord,
    ChallengeStatus,
    NegotiationAction,
    NegotiationEntry,
    NegotiationStatus,
    Offer,
    ProposedTerms,
    utcnow,
)
from ..models.events import EventType
from .transitions import (
    Clock,
    Settler,
    Transition,
    make_event,
    refund_steps,
    require,
    stake_steps,
    validate_terms,
)

NEGOTIABLE_STATUSES = (ChallengeStatus.PENDING, ChallengeStatus.NEGOTIATING)


class NegotiationEngine:
    """Counter-offer exchange that can happen before a challenge is accepted.

    Only the party who did not author the standing terms may counter or accept
    them. On a pending challenge the standing terms are the challenger's, so the
    opening counter-offer comes from the challengee.
    """

    def __init__(self, settler: Settler, clock: Clock = utcnow):
        self.settler = settler
        self.clock = clock

    @staticmethod
    def _entry(record: ChallengeRecord, action: NegotiationAction, actor_user_id: str, now, offer=None, note=None):
        return NegotiationEntry(
            sequence=len(record.negotiation_history) + 1,
            action=action,
            actor_user_id=actor_user_id,
            offer=offer,
            note=note,
            occurred_at=now,
        )

    def plan_propose_counter(self, record: ChallengeRecord, proposing_user_id: str, terms: ProposedTerms) -> Transition:
        operation = "propose_counter"
        if record.status not in NEGOTIABLE_STATUSES:
            raise InvalidStateError(operation, record.status.value, proposing_user_id, "challenge is no longer open for negotiation")
        require(record.is_party(proposing_user_id), operation, record, proposing_user_id, "only a party to the challenge can negotiate")
        if record.status == ChallengeStatus.PENDING:
            require(
                proposing_user_id == record.to_user_id, operation, record, proposing_user_id,
                "the challenger's terms are already on the table",
            )
        else:
            require(
                record.latest_offer is None or record.latest_offer.author_user_id != proposing_user_id,
                operation, record, proposing_user_id, "waiting for the other party to answer your offer",
            )

        expiry_days = terms.expiry_days if terms.expiry_days is not None else record.expiry_days
        text, wager, token = validate_terms(terms.challenge_text, terms.wager_amount, terms.wager_token, expiry_days)

        now = self.clock()
        previous = record.latest_offer.sequence if record.latest_offer else 0
        offer = Offer(
            challenge_text=text,
            wager_amount=wager,
            wager_token=token,
            expiry_days=expiry_days,
            author_user_id=proposing_user_id,
            note=terms.note,
            sequence=previous + 1,
            proposed_at=now,
        )
        target = record.evolve(
            status=ChallengeStatus.NEGOTIATING,
            negotiation_status=NegotiationStatus.PENDING_RESPONSE,
            latest_offer=offer,
            negotiation_history=record.negotiation_history + (
                self._entry(record, NegotiationAction.COUNTER_OFFER, proposing_user_id, now, offer, terms.note),
            ),
        )
        event = make_event(
            EventType.COUNTER_OFFER_PROPOSED, target, now, proposing_user_id,
            (record.other_party(proposing_user_id),),
            sequence=offer.sequence, wager_amount=wager, wager_token=token, expiry_days=expiry_days,
        )
        return Transition(operation, record, target, (event,), actor_user_id=proposing_user_id)

    def plan_accept_counter(self, record: ChallengeRecord, accepting_user_id: str) -> Transition:
        operation = "accept_counter"
        require(
            record.status == ChallengeStatus.NEGOTIATING and record.latest_offer is not None,
            operation, record, accepting_user_id, "there is no counter-offer to accept",
        )
        require(record.is_party(accepting_user_id), operation, record, accepting_user_id, "only a party to the challenge can accept")
        offer = record.latest_offer
        require(
            offer.author_user_id != accepting_user_id, operation, record, accepting_user_id,
            "a party cannot accept their own offer",
        )

        now = self.clock()
        target = record.evolve(
            challenge_text=offer.challenge_text,
            wager_amount=offer.wager_amount,
            wager_token=offer.wager_token if offer.wager_amount > 0 else None,
            expiry_days=offer.expiry_days,
            expires_at=record.created_at + timedelta(days=offer.expiry_days),
            latest_offer=None,
            status=ChallengeStatus.ACCEPTED,
            negotiation_status=NegotiationStatus.ACCEPTED,
            accepted_at=now,
            negotiation_history=record.negotiation_history + (
                self._entry(record, NegotiationAction.ACCEPTED, accepting_user_id, now),
            ),
        )
        steps = stake_steps(record, target.wager_amount, target.wager_token)
        event = make_event(
            EventType.CHALLENGE_ACCEPTED, target, now, accepting_user_id, (offer.author_user_id,),
            sequence=offer.sequence, wager_amount=target.wager_amount, wager_token=target.wager_token,
        )
        return Transition(operation, record, target, (event,), steps, accepting_user_id)

    def plan_decline_negotiation(self, record: ChallengeRecord, declining_user_id: str) -> Transition:
        operation = "decline_negotiation"
        require(record.status == ChallengeStatus.NEGOTIATING, operation, record, declining_user_id)
        require(record.is_party(declining_user_id), operation, record, declining_user_id, "only a party to the challenge can decline")

        now = self.clock()
        target = record.evolve(
            status=ChallengeStatus.DECLINED,
            negotiation_status=NegotiationStatus.DECLINED,
            latest_offer=None,
            resolved_at=now,
            negotiation_history=record.negotiation_history + (
                self._entry(record, NegotiationAction.DECLINED, declining_user_id, now),
            ),
        )
        event = make_event(
            EventType.CHALLENGE_DECLINED, target, now, declining_user_id,
            (record.other_party(declining_user_id),),
        )
        return Transition(operation, record, target, (event,), refund_steps(record), declining_user_id)

    async def propose_counter(self, record: ChallengeRecord, proposing_user_id: str, terms: ProposedTerms) -> Transition:
        return await self.settler.settle(self.plan_propose_counter(record, proposing_user_id, terms))

    async def accept_counter(self, record: ChallengeRecord, accepting_user_id: str) -> Transition:
        return await self.settler.settle(self.plan_accept_counter(record, accepting_user_id))

    async def decline_negotiation(self, record: ChallengeRecord, declining_user_id: str) -> Transition:
        return await self.settler.settle(self.plan_decline_negotiation(record, declining_user_id))
