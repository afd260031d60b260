"""Error taxonomy for the challenge lifecycle."""

from decimal import Decimal
from typing import Any, Optional


class AtlasError(Exception):
    """Base class for every error raised by the challenge core."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(AtlasError):
    """Malformed input: negative wager, empty text, missing proof."""


class NotFoundError(AtlasError):
    def __init__(self, challenge_id: str):
        self.challenge_id = challenge_id
        super().__init__(f"Challenge {challenge_id} not found", {"challenge_id": challenge_id})


class InvalidTransitionError(AtlasError):
    """The operation is not permitted for this status and actor."""

    def __init__(self, operation: str, current_status: str, acting_user_id: Optional[str] = None, reason: str = ""):
        self.operation = operation
        self.current_status = current_status
        self.acting_user_id = acting_user_id
        message = f"Cannot {operation} a challenge in status '{current_status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            {
                "operation": operation,
                "current_status": current_status,
                "acting_user_id": acting_user_id,
            },
        )


class EscrowError(AtlasError):
    """An escrow gateway call failed or timed out.

    ``ledger_record`` is set when a multi-step settlement failed part way: it is
    the pre-operation record with the steps that did succeed folded into its
    deposit ledger and receipts. Its status is never changed.
    """

    def __init__(
        self,
        message: str,
        operation: str,
        amount: Optional[Decimal] = None,
        token: Optional[str] = None,
        reference: Optional[str] = None,
        ledger_record: Any = None,
    ):
        self.operation = operation
        self.amount = amount
        self.token = token
        self.reference = reference
        self.ledger_record = ledger_record
        super().__init__(
            message,
            {
                "operation": operation,
                "amount": str(amount) if amount is not None else None,
                "token": token,
                "reference": reference,
            },
        )


class ConcurrentModificationError(AtlasError):
    def __init__(self, challenge_id: str, expected_version: Optional[int] = None, reason: str = ""):
        self.challenge_id = challenge_id
        self.expected_version = expected_version
        message = f"Challenge {challenge_id} was modified concurrently"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"challenge_id": challenge_id, "expected_version": expected_version})


# Raised by negotiation when the record is already past the point of counter-offers
InvalidStateError = InvalidTransitionError
