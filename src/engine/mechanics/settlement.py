import uuid
import polars as pl
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from src.server.state import GameState, set_row_values
from src.shared.errors import InsufficientAssetError, InternalError
from src.shared.resources import MarketAsset, ResourceKind
from src.engine.mechanics.listings import EPSILON, MarketListing

@dataclass(frozen=True)
class TradeRecord:
    """Immutable log entry of one executed match. Append-only."""
    id: str
    resource_type: str
    quantity: float
    price_per_unit: float
    buyer_user_id: str
    seller_user_id: str
    buyer_territory_id: Optional[str]
    seller_territory_id: Optional[str]
    buy_listing_id: str
    sell_listing_id: str
    tick_number: int
    executed_at: str

    @property
    def total_price(self) -> float:
        return self.quantity * self.price_per_unit

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


def _credit(df: pl.DataFrame, key_col: str, key: Any, column: str, amount: float,
            what: str) -> pl.DataFrame:
    row = df.filter(pl.col(key_col) == key)
    if row.is_empty():
        raise InsufficientAssetError(f"No {what} for '{key}'")
    return set_row_values(df, key_col, key, {column: (row.item(0, column) or 0.0) + amount})


def _warehouse_free_space(balances: pl.DataFrame, territory_id: str) -> float:
    row = balances.filter(pl.col("territory_id") == territory_id)
    if row.is_empty():
        raise InsufficientAssetError(f"Territory '{territory_id}' has no warehouse")
    values = row.row(0, named=True)
    stored = sum(values[kind.value] or 0.0 for kind in ResourceKind)
    return (values["capacity_total"] or 0.0) - stored


def settle_match(state: GameState, buy: MarketListing, sell: MarketListing, quantity: float,
                 tick_number: int) -> TradeRecord:
    """
    Executes one match at the seller's price as a single atomic unit.

    Both sides locked their side of the trade in escrow when the orders
    were created, so settlement only moves escrowed value:
        1. Asset leg:    `quantity` units to the buyer (token balance or
                         destination warehouse).
        2. Currency leg: `quantity * sell.price` to the seller's wallet.
        3. Refund leg:   the price improvement back to the buyer's wallet.

    All legs are computed on staged copies of the tables. Any failure raises
    before anything is committed, so a trade is all-or-nothing. The caller
    must hold both listings' row locks.
    """
    asset = MarketAsset(sell.resource_type)
    price = sell.price_per_unit
    reserved = quantity * buy.price_per_unit
    cost = quantity * price
    refund = reserved - cost

    # Pre-conditions: the fill fits both listings and both escrows cover it.
    if quantity > min(buy.remaining, sell.remaining) + EPSILON:
        raise InternalError(f"Fill of {quantity:g} exceeds what {buy.id}/{sell.id} have left")
    if buy.escrow + EPSILON < reserved:
        raise InsufficientAssetError(f"Buyer escrow {buy.escrow:.2f} cannot cover {reserved:.2f}")
    if sell.escrow + EPSILON < quantity:
        raise InsufficientAssetError(f"Seller escrow {sell.escrow:g} cannot cover {quantity:g}")

    with state.table_lock:
        staged: Dict[str, pl.DataFrame] = {}

        # 1. Asset leg
        if asset.is_token:
            staged["token_balances"] = _credit(
                state.get_table("token_balances"), "user_id", buy.owner_user_id,
                f"{asset.token.value}_tokens", quantity, "token balance",
            )
        else:
            balances = state.get_table("resource_balances")
            if _warehouse_free_space(balances, buy.territory_id) + EPSILON < quantity:
                raise InsufficientAssetError(f"Warehouse of '{buy.territory_id}' is full")
            staged["resource_balances"] = _credit(
                balances, "territory_id", buy.territory_id, asset.resource.value, quantity, "warehouse",
            )

        # 2. Currency leg
        wallets = _credit(state.get_table("wallets"), "user_id", sell.owner_user_id, "balance", cost, "wallet")
        wallets = _credit(wallets, "user_id", sell.owner_user_id, "total_earned", cost, "wallet")

        # 3. Refund leg
        if refund > EPSILON:
            wallets = _credit(wallets, "user_id", buy.owner_user_id, "balance", refund, "wallet")
        staged["wallets"] = wallets

        # Commit
        for name, df in staged.items():
            state.update_table(name, df)

        buy.escrow = max(0.0, buy.escrow - reserved)
        sell.escrow = max(0.0, sell.escrow - quantity)
        buy.record_fill(quantity)
        sell.record_fill(quantity)

        record = TradeRecord(
            id=str(uuid.uuid4()),
            resource_type=asset.value,
            quantity=quantity,
            price_per_unit=price,
            buyer_user_id=buy.owner_user_id,
            seller_user_id=sell.owner_user_id,
            buyer_territory_id=buy.territory_id,
            seller_territory_id=sell.territory_id,
            buy_listing_id=buy.id,
            sell_listing_id=sell.id,
            tick_number=tick_number,
            executed_at=datetime.now(timezone.utc).isoformat(),
        )
        state.append_rows("trade_records", [record.to_row()])

    return record
