import logging
from datetime import datetime
from typing import List, Optional

from ..errors import ConcurrentModificationError, EscrowError, NotFoundError
from ..models.challenge import ChallengeStatus, utcnow
from ..services.challenges import ChallengeService

logger = logging.getLogger(__name__)


async def sweep_expired_challenges(service: ChallengeService, now: Optional[datetime] = None) -> List[str]:
    """Expire every overdue challenge and refund its stakes.

    Meant to be called by an external scheduler. A record that is busy or whose
    refund fails is skipped and picked up again by the next sweep.
    """
    now = now or utcnow()
    expired = []
    candidates = [r for r in service.repository.list_expirable(now) if service.machine.is_expirable(r)]

    for record in candidates:
        try:
            updated = await service.check_expiry(record.id, now)
        except (ConcurrentModificationError, NotFoundError) as e:
            logger.warning("Skipping expiry of challenge %s: %s", record.id, e.message)
            continue
        except EscrowError as e:
            logger.warning("Refund failed while expiring challenge %s, will retry: %s", record.id, e.message)
            continue
        if updated.status == ChallengeStatus.EXPIRED:
            expired.append(updated.id)

    if candidates:
        logger.info("Expiry sweep: %d of %d overdue challenges expired", len(expired), len(candidates))
    return expired
