from pydantic import BaseModel, ConfigDict, Field
from decimal import Decimal


class EscrowHandle(BaseModel):
    """Opaque reference to the escrow account holding a challenge's stakes."""
    model_config = ConfigDict(frozen=True)

    escrow_id: str
    data: dict = Field(default_factory=dict)


class Receipt(BaseModel):
    model_config = ConfigDict(frozen=True)

    receipt_id: str
    escrow_id: str
    data: dict = Field(default_factory=dict)


class Payee(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    amount: Decimal
