import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, List, Optional, Protocol, TypeVar, runtime_checkable

from ..config import ESCROW_TIMEOUT_SECONDS
from ..errors import EscrowError
from ..models.escrow import EscrowHandle, Payee, Receipt

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class EscrowGateway(Protocol):
    """Custodial wallet capability. Implementations live outside this service.

    ``reference`` identifies the attempt (challenge, operation, round, step) so
    the gateway can de-duplicate a call retried after a timeout.
    """

    async def deposit(self, user_id: str, amount: Decimal, token: str, *, reference: str) -> EscrowHandle:
        ...

    async def release(self, handle: EscrowHandle, to_user_id: str, amount: Decimal, *, reference: str) -> Receipt:
        ...

    async def refund_split(self, handle: EscrowHandle, parties: List[Payee], *, reference: str) -> Receipt:
        ...

    async def refund_full(self, handle: EscrowHandle, to_user_id: str, *, reference: str) -> Receipt:
        ...


class UnavailableEscrowGateway:
    """Used when the deployment has not configured a gateway: every call fails."""

    async def deposit(self, user_id, amount, token, *, reference):
        raise EscrowError("No escrow gateway configured", "deposit", amount, token, reference)

    async def release(self, handle, to_user_id, amount, *, reference):
        raise EscrowError("No escrow gateway configured", "release", amount, None, reference)

    async def refund_split(self, handle, parties, *, reference):
        raise EscrowError("No escrow gateway configured", "refund_split", None, None, reference)

    async def refund_full(self, handle, to_user_id, *, reference):
        raise EscrowError("No escrow gateway configured", "refund_full", None, None, reference)


class EscrowClient:
    """Wraps a gateway so that every call is bounded, logged and fails as EscrowError."""

    def __init__(self, gateway: EscrowGateway, timeout: float = ESCROW_TIMEOUT_SECONDS):
        self.gateway = gateway
        self.timeout = timeout

    async def _call(
        self,
        operation: str,
        call: Awaitable[T],
        reference: str,
        amount: Optional[Decimal] = None,
        token: Optional[str] = None,
    ) -> T:
        logger.info("Escrow %s requested (amount=%s token=%s reference=%s)", operation, amount, token, reference)
        try:
            result = await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Escrow %s timed out after %ss (reference=%s)", operation, self.timeout, reference)
            raise EscrowError(
                f"Escrow {operation} timed out after {self.timeout}s", operation, amount, token, reference
            ) from exc
        except EscrowError as exc:
            logger.warning("Escrow %s failed: %s (reference=%s)", operation, exc.message, reference)
            raise
        except Exception as exc:
            logger.warning("Escrow %s failed: %s (reference=%s)", operation, exc, reference)
            raise EscrowError(f"Escrow {operation} failed: {exc}", operation, amount, token, reference) from exc
        logger.info("Escrow %s succeeded (reference=%s)", operation, reference)
        return result

    async def deposit(self, user_id: str, amount: Decimal, token: str, reference: str) -> EscrowHandle:
        return await self._call(
            "deposit",
            self.gateway.deposit(user_id, amount, token, reference=reference),
            reference, amount, token,
        )

    async def release(self, handle: EscrowHandle, to_user_id: str, amount: Decimal, token: Optional[str], reference: str) -> Receipt:
        return await self._call(
            "release",
            self.gateway.release(handle, to_user_id, amount, reference=reference),
            reference, amount, token,
        )

    async def refund_split(self, handle: EscrowHandle, parties: List[Payee], token: Optional[str], reference: str) -> Receipt:
        total = sum((p.amount for p in parties), Decimal("0"))
        return await self._call(
            "refund_split",
            self.gateway.refund_split(handle, parties, reference=reference),
            reference, total, token,
        )

    async def refund_full(self, handle: EscrowHandle, to_user_id: str, amount: Decimal, token: Optional[str], reference: str) -> Receipt:
        return await self._call(
            "refund_full",
            self.gateway.refund_full(handle, to_user_id, reference=reference),
            reference, amount, token,
        )
