import threading
import polars as pl
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional

from src.shared.errors import ConcurrencyConflictError, InternalError, ValidationError

# Quantities are floats (territory resources); fills below this are noise.
EPSILON = 1e-9

class ListingType(str, Enum):
    BUY = "buy"
    SELL = "sell"

class ListingStatus(str, Enum):
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (ListingStatus.OPEN, ListingStatus.PARTIALLY_FILLED)

# Allowed moves. Terminal states have none, so a status can never regress.
_TRANSITIONS = {
    ListingStatus.OPEN: {ListingStatus.PARTIALLY_FILLED, ListingStatus.FILLED, ListingStatus.CANCELLED},
    ListingStatus.PARTIALLY_FILLED: {ListingStatus.PARTIALLY_FILLED, ListingStatus.FILLED, ListingStatus.CANCELLED},
    ListingStatus.FILLED: set(),
    ListingStatus.CANCELLED: set(),
}

@dataclass
class MarketListing:
    """
    One buy or sell order.

    `escrow` is what the owner locked when the order was created and has not
    been released yet: asset units for sells, currency for buys.
    """
    id: str
    owner_user_id: str
    listing_type: ListingType
    resource_type: str
    quantity: float
    price_per_unit: float
    territory_id: Optional[str] = None
    filled_quantity: float = 0.0
    status: ListingStatus = ListingStatus.OPEN
    escrow: float = 0.0
    sequence: int = 0
    created_tick: int = 0

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def remaining(self) -> float:
        return max(0.0, self.quantity - self.filled_quantity)

    @property
    def is_buy(self) -> bool:
        return self.listing_type == ListingType.BUY

    def transition(self, new_status: ListingStatus):
        if new_status not in _TRANSITIONS[self.status]:
            raise ValidationError(f"Listing {self.id} cannot move from {self.status.value} to {new_status.value}")
        self.status = new_status

    def record_fill(self, quantity: float):
        if quantity <= 0 or quantity > self.remaining + EPSILON:
            raise InternalError(f"Fill of {quantity} exceeds remaining {self.remaining} on listing {self.id}")

        if self.remaining - quantity <= EPSILON:
            self.filled_quantity = self.quantity
            self.transition(ListingStatus.FILLED)
        else:
            self.filled_quantity += quantity
            self.transition(ListingStatus.PARTIALLY_FILLED)

    def to_row(self) -> Dict:
        return {
            "id": self.id,
            "owner_user_id": self.owner_user_id,
            "territory_id": self.territory_id,
            "listing_type": self.listing_type.value,
            "resource_type": self.resource_type,
            "quantity": float(self.quantity),
            "filled_quantity": float(self.filled_quantity),
            "price_per_unit": float(self.price_per_unit),
            "status": self.status.value,
            "escrow": float(self.escrow),
            "sequence": self.sequence,
            "created_tick": self.created_tick,
        }


class ListingBook:
    """
    In-memory order book with row-level locks.

    Architecture Note:
        Listings are mutated concurrently by order handling (HTTP threads)
        and by the tick's matching pass. Instead of one lock over the whole
        book, every listing carries its own lock and acquisition never
        blocks: a listing someone else holds is skipped ("skip locked"),
        which is what prevents two matches from spending the same remaining
        quantity.
    """

    def __init__(self, listings: Optional[List[MarketListing]] = None):
        self._listings: Dict[str, MarketListing] = {}
        self._guard = threading.Lock()
        self._next_sequence = 1
        for listing in listings or []:
            self._listings[listing.id] = listing
            self._next_sequence = max(self._next_sequence, listing.sequence + 1)

    def __len__(self) -> int:
        return len(self._listings)

    def add(self, listing: MarketListing) -> MarketListing:
        with self._guard:
            if listing.id in self._listings:
                raise ValidationError(f"Listing {listing.id} already exists")
            listing.sequence = self._next_sequence
            self._next_sequence += 1
            self._listings[listing.id] = listing
        return listing

    def get(self, listing_id: str) -> Optional[MarketListing]:
        return self._listings.get(listing_id)

    def all(self) -> List[MarketListing]:
        with self._guard:
            return sorted(self._listings.values(), key=lambda l: l.sequence)

    def active(self, resource_type: Optional[str] = None) -> List[MarketListing]:
        """Open and partially filled listings in discovery order."""
        return [
            l for l in self.all()
            if l.status.is_active and (resource_type is None or l.resource_type == resource_type)
        ]

    def open_count(self, user_id: str) -> int:
        return sum(1 for l in self.active() if l.owner_user_id == user_id)

    @contextmanager
    def locked(self, *listings: MarketListing) -> Iterator[None]:
        """
        Takes the row locks of `listings` without waiting.
        Raises ConcurrencyConflictError (and holds nothing) if any is busy.
        """
        acquired = []
        try:
            for listing in listings:
                if not listing.lock.acquire(blocking=False):
                    raise ConcurrencyConflictError(f"Listing {listing.id} is locked")
                acquired.append(listing)
            yield
        finally:
            for listing in reversed(acquired):
                listing.lock.release()

    # --- Persistence ---

    def to_frame(self) -> pl.DataFrame:
        rows = [l.to_row() for l in self.all()]
        if not rows:
            return pl.DataFrame(schema={
                "id": pl.Utf8, "owner_user_id": pl.Utf8, "territory_id": pl.Utf8,
                "listing_type": pl.Utf8, "resource_type": pl.Utf8, "quantity": pl.Float64,
                "filled_quantity": pl.Float64, "price_per_unit": pl.Float64, "status": pl.Utf8,
                "escrow": pl.Float64, "sequence": pl.Int64, "created_tick": pl.Int64,
            })
        return pl.DataFrame(rows)

    @classmethod
    def from_frame(cls, df: Optional[pl.DataFrame]) -> "ListingBook":
        if df is None or df.is_empty():
            return cls()
        listings = [
            MarketListing(
                id=str(row["id"]),
                owner_user_id=str(row["owner_user_id"]),
                territory_id=row.get("territory_id"),
                listing_type=ListingType(row["listing_type"]),
                resource_type=row["resource_type"],
                quantity=float(row["quantity"]),
                filled_quantity=float(row.get("filled_quantity") or 0.0),
                price_per_unit=float(row["price_per_unit"]),
                status=ListingStatus(row.get("status") or "open"),
                escrow=float(row.get("escrow") or 0.0),
                sequence=int(row.get("sequence") or 0),
                created_tick=int(row.get("created_tick") or 0),
            )
            for row in df.iter_rows(named=True)
        ]
        return cls(listings)
