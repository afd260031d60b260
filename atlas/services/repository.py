"""Durable storage for challenge records.

``save`` is a compare-and-swap on ``version``: it only succeeds if the stored
record still carries ``expected_version``, and it stores the record with the
version bumped by one.
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Protocol, Set

from sqlalchemy.engine import Engine
from sqlmodel import Session, select, update

from ..errors import ConcurrentModificationError, NotFoundError
from ..models.challenge import ChallengeRecord, ChallengeStatus
from ..models.challenge_row import ChallengeRow

EXPIRABLE_STATUSES = (ChallengeStatus.PENDING, ChallengeStatus.ACCEPTED)


class ChallengeRepository(Protocol):
    def add(self, record: ChallengeRecord) -> ChallengeRecord:
        ...

    def load(self, challenge_id: str) -> ChallengeRecord:
        ...

    def save(self, record: ChallengeRecord, expected_version: int) -> ChallengeRecord:
        ...

    def list_expirable(self, now: datetime) -> List[ChallengeRecord]:
        ...

    def stream_changes(self, challenge_id: str) -> AsyncIterator[ChallengeRecord]:
        ...


class _ChangeFeed:
    """Fan-out of saved records to ``stream_changes`` subscribers."""

    def __init__(self):
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def publish(self, record: ChallengeRecord) -> None:
        for queue in list(self._subscribers.get(record.id, ())):
            queue.put_nowait(record)

    async def stream(self, current: ChallengeRecord) -> AsyncIterator[ChallengeRecord]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[current.id].add(queue)
        try:
            yield current
            while not current.is_terminal:
                current = await queue.get()
                yield current
        finally:
            self._subscribers[current.id].discard(queue)
            if not self._subscribers[current.id]:
                del self._subscribers[current.id]


class InMemoryChallengeRepository:
    def __init__(self):
        self._records: Dict[str, ChallengeRecord] = {}
        self._feed = _ChangeFeed()

    def add(self, record: ChallengeRecord) -> ChallengeRecord:
        if record.id in self._records:
            raise ConcurrentModificationError(record.id, None, "a challenge with this id already exists")
        self._records[record.id] = record
        self._feed.publish(record)
        return record

    def load(self, challenge_id: str) -> ChallengeRecord:
        try:
            return self._records[challenge_id]
        except KeyError:
            raise NotFoundError(challenge_id)

    def save(self, record: ChallengeRecord, expected_version: int) -> ChallengeRecord:
        current = self.load(record.id)
        if current.version != expected_version:
            raise ConcurrentModificationError(record.id, expected_version)
        saved = record.evolve(version=expected_version + 1)
        self._records[record.id] = saved
        self._feed.publish(saved)
        return saved

    def list_expirable(self, now: datetime) -> List[ChallengeRecord]:
        return sorted(
            (r for r in self._records.values() if r.status in EXPIRABLE_STATUSES and r.expires_at < now),
            key=lambda r: r.expires_at,
        )

    def stream_changes(self, challenge_id: str) -> AsyncIterator[ChallengeRecord]:
        return self._feed.stream(self.load(challenge_id))


class SQLModelChallengeRepository:
    """Challenge records in the ``challenge`` table.

    ``stream_changes`` only sees saves made through this repository instance.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._feed = _ChangeFeed()

    def add(self, record: ChallengeRecord) -> ChallengeRecord:
        with Session(self.engine) as session:
            if session.get(ChallengeRow, record.id) is not None:
                raise ConcurrentModificationError(record.id, None, "a challenge with this id already exists")
            session.add(ChallengeRow.from_record(record))
            session.commit()
        self._feed.publish(record)
        return record

    def load(self, challenge_id: str) -> ChallengeRecord:
        with Session(self.engine) as session:
            row = session.get(ChallengeRow, challenge_id)
            if row is None:
                raise NotFoundError(challenge_id)
            return row.to_record()

    def save(self, record: ChallengeRecord, expected_version: int) -> ChallengeRecord:
        saved = record.evolve(version=expected_version + 1)
        values = ChallengeRow.values_from(saved)
        del values["id"]

        with Session(self.engine) as session:
            result = session.exec(
                update(ChallengeRow)
                .where(ChallengeRow.id == record.id)
                .where(ChallengeRow.version == expected_version)
                .values(**values)
            )
            if result.rowcount == 0:
                session.rollback()
                if session.get(ChallengeRow, record.id) is None:
                    raise NotFoundError(record.id)
                raise ConcurrentModificationError(record.id, expected_version)
            session.commit()

        self._feed.publish(saved)
        return saved

    def list_expirable(self, now: datetime) -> List[ChallengeRecord]:
        cutoff = now.astimezone(timezone.utc)
        with Session(self.engine) as session:
            rows = session.exec(
                select(ChallengeRow)
                .where(ChallengeRow.status.in_([status.value for status in EXPIRABLE_STATUSES]))
                .where(ChallengeRow.expires_at < cutoff)
                .order_by(ChallengeRow.expires_at)
            ).all()
            return [row.to_record() for row in rows]

    def stream_changes(self, challenge_id: str) -> AsyncIterator[ChallengeRecord]:
        return self._feed.stream(self.load(challenge_id))

