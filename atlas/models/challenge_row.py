from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional
from datetime import datetime, timezone
from decimal import Decimal

from .challenge import ChallengeRecord

# Nested values are stored as JSON documents
JSON_FIELDS = {
    "latest_offer",
    "negotiation_history",
    "deposits",
    "escrow_data",
    "escrow_ledger",
    "response_data",
    "refund_breakdown",
    "tie_details",
}

DATETIME_FIELDS = (
    "created_at",
    "expires_at",
    "accepted_at",
    "response_submitted_at",
    "resolved_at",
    "pending_since",
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # Some drivers hand back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None:
        return _aware(value).astimezone(timezone.utc)
    return value


class ChallengeRow(SQLModel, table=True):
    __tablename__ = "challenge"

    id: str = Field(primary_key=True, max_length=64)
    from_user_id: str = Field(index=True, max_length=128)
    to_user_id: str = Field(index=True, max_length=128)
    challenge_text: str = Field(max_length=2000)
    # Decimal string, never a float
    wager_amount: str = Field(default="0", max_length=64)
    wager_token: Optional[str] = Field(default=None, max_length=16)
    expiry_days: int
    status: str = Field(index=True, max_length=32)
    negotiation_status: str = Field(max_length=32)
    latest_offer: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    negotiation_history: list = Field(default_factory=list, sa_column=Column(JSON))

    deposits: list = Field(default_factory=list, sa_column=Column(JSON))
    escrow_account: Optional[str] = Field(default=None, max_length=255)
    escrow_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    escrow_ledger: list = Field(default_factory=list, sa_column=Column(JSON))

    response_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    retry_comment: Optional[str] = Field(default=None, max_length=2000)
    retry_count: int = Field(default=0)
    dispute_comment: Optional[str] = Field(default=None, max_length=2000)
    winner_user_id: Optional[str] = Field(default=None, max_length=128)
    refund_breakdown: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    tie_details: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime
    expires_at: datetime = Field(index=True)
    accepted_at: Optional[datetime] = None
    response_submitted_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    pending_operation: Optional[str] = Field(default=None, max_length=64)
    pending_since: Optional[datetime] = None

    version: int = Field(default=0)

    @staticmethod
    def values_from(record: ChallengeRecord) -> dict:
        """Column values for ``record``, ready for an insert or update."""
        values = record.model_dump(exclude=JSON_FIELDS)
        values.update(record.model_dump(mode="json", include=JSON_FIELDS))
        values["wager_amount"] = str(record.wager_amount)
        values["status"] = record.status.value
        values["negotiation_status"] = record.negotiation_status.value
        for name in DATETIME_FIELDS:
            values[name] = _utc(values[name])
        return values

    @classmethod
    def from_record(cls, record: ChallengeRecord) -> "ChallengeRow":
        return cls(**cls.values_from(record))

    def to_record(self) -> ChallengeRecord:
        data = self.model_dump()
        for name in DATETIME_FIELDS:
            data[name] = _aware(data[name])
        data["wager_amount"] = Decimal(self.wager_amount)
        return ChallengeRecord.model_validate(data)
