import math
import uuid
import polars as pl
from typing import List, Optional, Tuple

from src.server.state import GameState, set_row_values
from src.shared.actions import ActionCreateOrder, ActionCancelOrder
from src.shared.errors import (
    ConcurrencyConflictError, InsufficientAssetError, PermissionDenied, ValidationError,
)
from src.shared.events import EventLargeTrade, GameEvent
from src.shared.resources import MarketAsset
from src.engine.mechanics.listings import (
    EPSILON, ListingBook, ListingStatus, ListingType, MarketListing,
)
from src.engine.mechanics.settlement import TradeRecord, settle_match


class MarketClearingEngine:
    """
    Price-time priority double auction over the listing book.

    Logic:
        Sells are ranked by price ascending, buys by price descending; equal
        prices keep discovery order. Every buy (outer loop) walks the sells
        (inner loop) and trades with each compatible one until it is filled:
        same asset, sell price <= buy price, different owners. The trade
        executes at the seller's price.

    A pair whose row locks are held elsewhere, or whose settlement fails,
    is skipped; the pass continues with the next candidate.
    """

    def clear(self, state: GameState, resource_type: Optional[str] = None,
              tick_number: int = 0, events: Optional[List[GameEvent]] = None) -> List[TradeRecord]:
        """Runs one matching pass. Trade events go to `events` (default: the tick's event bus)."""
        book = state.listings
        events = state.events if events is None else events
        if book is None:
            return []

        active = book.active(resource_type)
        sells = sorted((l for l in active if not l.is_buy), key=lambda l: (l.price_per_unit, l.sequence))
        buys = sorted((l for l in active if l.is_buy), key=lambda l: (-l.price_per_unit, l.sequence))

        trades: List[TradeRecord] = []
        for buy in buys:
            for sell in sells:
                if buy.remaining <= EPSILON:
                    break
                if not self._compatible(buy, sell):
                    continue

                try:
                    with book.locked(buy, sell):
                        # State may have moved while we were not holding the locks.
                        if not (buy.status.is_active and sell.status.is_active):
                            continue
                        quantity = min(buy.remaining, sell.remaining)
                        if quantity <= EPSILON:
                            continue
                        trade = settle_match(state, buy, sell, quantity, tick_number)
                except ConcurrencyConflictError as e:
                    print(f"[System:Market] Skipped {buy.id}/{sell.id}: {e.message}")
                    continue
                except InsufficientAssetError as e:
                    print(f"[System:Market] Match {buy.id}/{sell.id} aborted: {e.message}")
                    continue

                trades.append(trade)
                if trade.quantity >= state.config.trade_event_threshold:
                    events.append(EventLargeTrade(
                        resource_type=trade.resource_type,
                        quantity=trade.quantity,
                        price_per_unit=trade.price_per_unit,
                        buyer_territory=trade.buyer_territory_id,
                        seller_territory=trade.seller_territory_id,
                    ))

        return trades

    @staticmethod
    def _compatible(buy: MarketListing, sell: MarketListing) -> bool:
        return (
            sell.resource_type == buy.resource_type
            and sell.price_per_unit <= buy.price_per_unit
            and sell.owner_user_id != buy.owner_user_id
            and sell.remaining > EPSILON
        )


# --- Order handling ---

def _parse_order(action: ActionCreateOrder) -> Tuple[ListingType, MarketAsset]:
    try:
        listing_type = ListingType(action.listing_type)
    except ValueError:
        raise ValidationError(f"Unknown listing type '{action.listing_type}'")
    try:
        asset = MarketAsset(action.resource_type)
    except ValueError:
        raise ValidationError(f"Unknown resource type '{action.resource_type}'")

    for name in ("quantity", "price_per_unit"):
        value = getattr(action, name)
        if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
            raise ValidationError(f"'{name}' must be a positive number")
    if asset.is_token and float(action.quantity) != int(action.quantity):
        raise ValidationError("Token quantities must be whole numbers")

    if not asset.is_token and not action.territory_id:
        # A resource needs a warehouse on both sides of the trade.
        raise ValidationError(f"territory_id is required to {listing_type.value} {asset.value}")
    return listing_type, asset


def _check_territory_owner(state: GameState, territory_id: str, user_id: str):
    territory = state.find_row("territories", "id", territory_id)
    if territory is None:
        raise ValidationError(f"Territory '{territory_id}' does not exist")
    if territory.get("owner_id") != user_id:
        raise PermissionDenied(f"Territory '{territory_id}' does not belong to you")


def _take(df: pl.DataFrame, key_col: str, key: str, column: str, amount: float) -> pl.DataFrame:
    row = df.filter(pl.col(key_col) == key)
    available = 0.0 if row.is_empty() else float(row.item(0, column) or 0.0)
    if row.is_empty() or available + EPSILON < amount:
        raise InsufficientAssetError(f"Insufficient {column}: have {available:g}, need {amount:g}")
    return set_row_values(df, key_col, key, {column: available - amount})


def _give(df: pl.DataFrame, key_col: str, key: str, column: str, amount: float) -> pl.DataFrame:
    row = df.filter(pl.col(key_col) == key)
    if row.is_empty():
        raise InsufficientAssetError(f"No '{column}' account for '{key}'")
    return set_row_values(df, key_col, key, {column: float(row.item(0, column) or 0.0) + amount})


def _escrow_target(listing: MarketListing) -> Tuple[str, str, str, str]:
    """(table, key column, key, value column) holding what the listing locks."""
    asset = MarketAsset(listing.resource_type)
    if listing.is_buy:
        return "wallets", "user_id", listing.owner_user_id, "balance"
    if asset.is_token:
        return "token_balances", "user_id", listing.owner_user_id, f"{asset.token.value}_tokens"
    return "resource_balances", "territory_id", listing.territory_id, asset.resource.value


def create_order(state: GameState, action: ActionCreateOrder,
                 engine: Optional[MarketClearingEngine] = None,
                 tick_number: int = 0,
                 events: Optional[List[GameEvent]] = None) -> Tuple[MarketListing, List[TradeRecord]]:
    """
    Validates an order, locks its escrow, lists it and tries to match it.

    Everything that can reject the order runs before the escrow is taken,
    so a rejected order leaves no trace.
    """
    listing_type, asset = _parse_order(action)
    user_id = action.player_id

    if state.listings is None:
        state.listings = ListingBook()
    book = state.listings

    limit = state.config.max_open_listings
    if book.open_count(user_id) >= limit:
        raise ValidationError(f"Limit of {limit} active orders reached. Cancel existing orders first.")

    if action.territory_id and not asset.is_token:
        _check_territory_owner(state, action.territory_id, user_id)

    quantity = float(action.quantity)
    price = float(action.price_per_unit)
    listing = MarketListing(
        id=str(uuid.uuid4()),
        owner_user_id=user_id,
        listing_type=listing_type,
        resource_type=asset.value,
        quantity=quantity,
        price_per_unit=price,
        territory_id=None if asset.is_token else action.territory_id,
        escrow=quantity * price if listing_type == ListingType.BUY else quantity,
        created_tick=tick_number,
    )

    table, key_col, key, column = _escrow_target(listing)
    with state.table_lock:
        state.update_table(table, _take(state.get_table(table), key_col, key, column, listing.escrow))
        book.add(listing)

    print(f"[Market] {user_id} listed {listing_type.value} {quantity:g} {asset.value} @ {price:g} ({listing.id})")

    engine = engine or MarketClearingEngine()
    trades = engine.clear(state, asset.value, tick_number, events)
    return listing, trades


def cancel_order(state: GameState, action: ActionCancelOrder) -> MarketListing:
    """
    Withdraws a listing and hands its remaining escrow back to the owner.
    Filled and cancelled listings are final.

    Resource escrow goes back into the warehouse without a capacity check,
    the same way it left it. Stock pushed over capacity this way is scaled
    down by the next tick's territory pass.
    """
    book = state.listings
    listing = book.get(action.listing_id) if book else None
    if listing is None:
        raise ValidationError(f"Listing '{action.listing_id}' not found")
    if listing.owner_user_id != action.player_id:
        raise PermissionDenied("You can only cancel your own orders")

    with book.locked(listing):
        if not listing.status.is_active:
            raise ValidationError(f"Listing is already {listing.status.value}")

        table, key_col, key, column = _escrow_target(listing)
        with state.table_lock:
            if listing.escrow > EPSILON:
                state.update_table(table, _give(state.get_table(table), key_col, key, column, listing.escrow))
            listing.transition(ListingStatus.CANCELLED)
            refunded = listing.escrow
            listing.escrow = 0.0

    print(f"[Market] {action.player_id} cancelled {listing.id}, returned {refunded:g} {column}")
    return listing
