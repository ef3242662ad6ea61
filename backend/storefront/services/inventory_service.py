# Overview: Service-layer operations for inventory; reservation and restock of per-variant stock.

# backend/storefront/services/inventory_service.py

"""
Storefront Inventory Invariants (authoritative)

Inventory model:
- One ProductInventory row per (product_id, variant_label) holding stock_units.
- A missing row means zero stock.

Business invariants:
- stock_units may never go negative.
- A reservation is all-or-nothing: every line is checked before any row is
  written, and a failed batch leaves every row untouched.
- Restock adds units back (stock + n); it never writes a snapshot, so it is
  safe even if stock moved since the reservation.

Concurrency:
- Rows are read with SELECT ... FOR UPDATE (BEGIN IMMEDIATE on SQLite via the
  caller) and decremented with a conditional UPDATE
  (stock_units = stock_units - n WHERE stock_units >= n), so two
  submissions racing for the last unit cannot both succeed.
- Keys are processed in sorted order to avoid lock-order deadlocks.
- reserve_items() and restock() do not commit; the caller owns the
  transaction so stock moves atomically with the order write.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import update

from ..extensions import db
from ..models import ProductInventory
from ..validation import CartLineItem
from .concurrency import lock_for_update, run_with_retry


class OutOfStockError(Exception):
    """Raised when a reservation would drive stock below zero."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


@dataclass(frozen=True)
class StockAdjustment:
    """Result of one reserve/restock: units moved and the stock afterwards."""
    product_id: str
    variant_label: str
    units: int
    next_stock: int

    @property
    def key(self) -> tuple[str, str]:
        return (self.product_id, self.variant_label)


def _requested_units(items: Iterable[CartLineItem]) -> dict[tuple[str, str], tuple[int, str]]:
    """Aggregate requested units per inventory key (with a display label)."""
    requested: dict[tuple[str, str], tuple[int, str]] = {}
    for item in items:
        key = (item.product_id, item.variant_label)
        units, label = requested.get(key, (0, f"{item.product_name or item.product_id} ({item.variant_label})"))
        requested[key] = (units + item.tier_quantity * max(item.count, 1), label)
    return requested


def _locked_row(product_id: str, variant_label: str) -> ProductInventory | None:
    query = db.session.query(ProductInventory).filter_by(
        product_id=product_id, variant_label=variant_label
    )
    return lock_for_update(query).first()


def _out_of_stock_message(label: str, remaining: int) -> str:
    if remaining > 0:
        unit_word = "unit" if remaining == 1 else "units"
        return f"Only {remaining} {unit_word} of {label} remain. Adjust your cart before submitting."
    return f"{label} is out of stock."


def reserve_items(items: Iterable[CartLineItem]) -> list[StockAdjustment]:
    """
    Decrement stock for every cart line, or nothing at all.

    Raises OutOfStockError naming the first offending item and what
    remains. Does not commit.
    """
    requested = _requested_units(items)
    keys = sorted(requested)

    # Phase 1: check everything under lock before writing anything
    current: dict[tuple[str, str], int] = {}
    for key in keys:
        units, label = requested[key]
        row = _locked_row(*key)
        available = row.stock_units if row else 0
        if available - units < 0:
            raise OutOfStockError(
                _out_of_stock_message(label, available),
                details={
                    "product_id": key[0],
                    "variant_label": key[1],
                    "requested_units": units,
                    "available_units": available,
                },
            )
        current[key] = available

    # Phase 2: guarded decrements
    adjustments: list[StockAdjustment] = []
    for key in keys:
        units, label = requested[key]
        result = db.session.execute(
            update(ProductInventory)
            .where(
                ProductInventory.product_id == key[0],
                ProductInventory.variant_label == key[1],
                ProductInventory.stock_units >= units,
            )
            .values(stock_units=ProductInventory.stock_units - units)
        )
        if not result.rowcount:
            # Lost a race the row lock should have prevented; caller rolls back
            raise OutOfStockError(
                _out_of_stock_message(label, 0),
                details={"product_id": key[0], "variant_label": key[1], "requested_units": units},
            )
        adjustments.append(StockAdjustment(
            product_id=key[0],
            variant_label=key[1],
            units=units,
            next_stock=current[key] - units,
        ))

    db.session.flush()
    return adjustments


def restock(adjustments: Iterable[StockAdjustment]) -> list[StockAdjustment]:
    """Add reserved units back. Does not commit."""
    restocked = []
    for adj in sorted(adjustments, key=lambda a: a.key):
        row = _locked_row(adj.product_id, adj.variant_label)
        if row is None:
            row = ProductInventory(product_id=adj.product_id, variant_label=adj.variant_label, stock_units=0)
            db.session.add(row)
            db.session.flush()

        db.session.execute(
            update(ProductInventory)
            .where(ProductInventory.id == row.id)
            .values(stock_units=ProductInventory.stock_units + adj.units)
        )
        db.session.flush()
        db.session.refresh(row)
        restocked.append(StockAdjustment(
            product_id=adj.product_id,
            variant_label=adj.variant_label,
            units=adj.units,
            next_stock=row.stock_units,
        ))
    return restocked


def restock_items(items: Iterable[CartLineItem]) -> list[StockAdjustment]:
    """Restock every unit of the given cart lines (order cancellation). Does not commit."""
    requested = _requested_units(items)
    return restock(
        StockAdjustment(product_id=key[0], variant_label=key[1], units=units, next_stock=0)
        for key, (units, _label) in requested.items()
    )


def get_stock(product_id: str, variant_label: str) -> int:
    row = db.session.query(ProductInventory).filter_by(
        product_id=product_id, variant_label=variant_label
    ).first()
    return row.stock_units if row else 0


def list_inventory(product_id: str | None = None) -> list[ProductInventory]:
    q = db.session.query(ProductInventory)
    if product_id:
        q = q.filter_by(product_id=product_id)
    return q.order_by(ProductInventory.product_id, ProductInventory.variant_label).all()


def set_stock(product_id: str, variant_label: str, stock_units: int) -> ProductInventory:
    """Admin override of a variant's stock (clamped at zero). Commits."""
    next_stock = max(0, int(stock_units))

    def _op():
        row = _locked_row(product_id, variant_label)
        if row is None:
            row = ProductInventory(product_id=product_id, variant_label=variant_label, stock_units=next_stock)
            db.session.add(row)
        else:
            row.stock_units = next_stock
        db.session.commit()
        return row

    return run_with_retry(_op)
