from dataclasses import dataclass
from typing import Optional

@dataclass
class GameAction:
    """
    Base class for all discrete game actions following the Command Pattern.

    Architecture Note:
        Clients do not modify the GameState directly.
        Instead, they issue Actions and the GameSession executes them.
        This keeps validation in one place and makes replays possible.
    """
    # Identifies who initiated the action (a user id, or 'scheduler' for auto ticks).
    player_id: str

# --- Tick Actions ---

@dataclass
class ActionRunTick(GameAction):
    """
    Advances the world by exactly one tick.
    Only principals holding the admin role may issue it.
    """
    pass

# --- Market Actions ---

@dataclass
class ActionCreateOrder(GameAction):
    """
    Places a buy or sell listing on the planetary market.

    territory_id:
        - Sell of a resource: the warehouse the goods are taken from.
        - Buy of a resource: the warehouse the goods are delivered to.
        - Tokens: ignored (tokens live on the user, not the territory).
    """
    listing_type: str
    resource_type: str
    quantity: float
    price_per_unit: float
    territory_id: Optional[str] = None

@dataclass
class ActionCancelOrder(GameAction):
    """
    Withdraws an open or partially filled listing and returns its escrow.
    """
    listing_id: str
