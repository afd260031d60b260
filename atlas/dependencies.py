from functools import lru_cache

from .database import engine
from .services.challenges import ChallengeService
from .services.escrow import EscrowClient, EscrowGateway, UnavailableEscrowGateway
from .services.notification import PushNotificationSink
from .services.repository import SQLModelChallengeRepository
from .services.state_machine import ChallengeStateMachine

# Provided by the deployment; wagered operations fail until one is set
_escrow_gateway: EscrowGateway = UnavailableEscrowGateway()


def set_escrow_gateway(gateway: EscrowGateway) -> None:
    global _escrow_gateway
    _escrow_gateway = gateway
    get_challenge_service.cache_clear()


@lru_cache
def get_challenge_service() -> ChallengeService:
    repository = SQLModelChallengeRepository(engine)
    machine = ChallengeStateMachine(EscrowClient(_escrow_gateway))
    return ChallengeService(repository, machine, PushNotificationSink.from_config(engine))
