from enum import Enum
from typing import Dict, Optional

from src.shared.errors import ValidationError


class ResourceKind(str, Enum):
    """
    The four warehouse resources.

    Architecture Note:
        Every per-resource rule (production, capacity, consumption, crises)
        iterates over this enum instead of branching on column names.
        The enum value doubles as the column name in 'resource_balances'.
    """
    FOOD = "food"
    ENERGY = "energy"
    MINERALS = "minerals"
    TECH = "tech"


class TokenKind(str, Enum):
    CITY = "city"
    LAND = "land"
    STATE = "state"


class MarketAsset(str, Enum):
    """
    Everything that can be listed on the planetary market.
    """
    FOOD = "food"
    ENERGY = "energy"
    MINERALS = "minerals"
    TECH = "tech"
    TOKEN_CITY = "token_city"
    TOKEN_LAND = "token_land"
    TOKEN_STATE = "token_state"

    @property
    def is_token(self) -> bool:
        return self.value.startswith("token_")

    @property
    def resource(self) -> Optional[ResourceKind]:
        """The warehouse resource behind this asset (None for tokens)."""
        if self.is_token:
            return None
        return ResourceKind(self.value)

    @property
    def token(self) -> Optional[TokenKind]:
        if not self.is_token:
            return None
        return TokenKind(self.value.removeprefix("token_"))


class TerritoryLevel(str, Enum):
    COLONY = "colony"
    AUTONOMOUS = "autonomous"
    RECOGNIZED = "recognized"
    KINGDOM = "kingdom"
    POWER = "power"

    @classmethod
    def parse(cls, value: Optional[str]) -> "TerritoryLevel":
        """Missing levels read as colony; anything else must be a known level."""
        if not value:
            return cls.COLONY
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown territory level '{value}'") from None


class EffectTag(str, Enum):
    """
    Typed law effects, attached when a law is drafted.
    The tick engine only ever sees these tags, never free text.
    """
    AGRICULTURE = "agriculture"
    ENERGY = "energy"
    INFRASTRUCTURE = "infrastructure"
    MINERALS = "minerals"
    INDUSTRY = "industry"
    RESEARCH = "research"
    TECHNOLOGY = "technology"
    SOCIAL = "social"
    SECURITY = "security"


# Which resource each tag boosts. Tags missing here carry no production effect.
TAG_RESOURCE: Dict[EffectTag, ResourceKind] = {
    EffectTag.AGRICULTURE: ResourceKind.FOOD,
    EffectTag.ENERGY: ResourceKind.ENERGY,
    EffectTag.INFRASTRUCTURE: ResourceKind.ENERGY,
    EffectTag.MINERALS: ResourceKind.MINERALS,
    EffectTag.INDUSTRY: ResourceKind.MINERALS,
    EffectTag.RESEARCH: ResourceKind.TECH,
    EffectTag.TECHNOLOGY: ResourceKind.TECH,
}


def zero_resources() -> Dict[ResourceKind, float]:
    return {kind: 0.0 for kind in ResourceKind}
