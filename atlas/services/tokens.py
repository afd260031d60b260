from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional


@dataclass(frozen=True)
class TokenConfig:
    symbol: str
    decimals: int
    min_wager: Decimal

    @property
    def minor_unit(self) -> Decimal:
        return Decimal(1).scaleb(-self.decimals)


SUPPORTED_TOKENS: Dict[str, TokenConfig] = {
    "SOL": TokenConfig(symbol="SOL", decimals=9, min_wager=Decimal("0.001")),
    "USDC": TokenConfig(symbol="USDC", decimals=6, min_wager=Decimal("0.5")),
    "BONK": TokenConfig(symbol="BONK", decimals=5, min_wager=Decimal("1000")),
}


def get_token(symbol: Optional[str]) -> Optional[TokenConfig]:
    if not symbol:
        return None
    return SUPPORTED_TOKENS.get(symbol.upper())


def decimal_places(amount: Decimal) -> int:
    exponent = amount.normalize().as_tuple().exponent
    return max(0, -exponent) if isinstance(exponent, int) else 0
