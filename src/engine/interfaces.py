from abc import ABC, abstractmethod
from typing import List
from src.server.state import GameState

class ISystem(ABC):
    """
    One stage of the daily tick (construction, maintenance, laws, territory
    economy, migration, market).

    Systems share data only through the GameState: tables, `state.tick`
    scratch data and the event bus. The Engine orders them by `dependencies`,
    never by registration order.
    """

    @property
    @abstractmethod
    def id(self) -> str:
        """'<mod_id>.<stage>', e.g. 'base.territory'."""
        ...

    @property
    def dependencies(self) -> List[str]:
        """Ids of the systems whose output this one reads in the same tick."""
        return []

    @abstractmethod
    def update(self, state: GameState) -> None:
        """Runs this stage for tick `state.tick.number`. Raising marks the stage failed."""
        ...
