from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class ProductInventory(db.Model):
    """
    Sellable stock for one (product, variant) pair.

    The catalog itself (names, images, pricing tiers) lives outside the
    database; only stock is persisted here.

    INVARIANT: stock_units never goes negative. Reservations use a
    conditional decrement (see services/inventory_service.py) and the
    check constraint is the last line of enforcement.
    """
    __tablename__ = "product_inventory"
    __table_args__ = (
        db.UniqueConstraint("product_id", "variant_label", name="uq_product_inventory_product_variant"),
        db.CheckConstraint("stock_units >= 0", name="ck_product_inventory_stock_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Catalog slug, e.g. "bpc-157"
    product_id = db.Column(db.String(128), nullable=False, index=True)
    variant_label = db.Column(db.String(128), nullable=False)

    stock_units = db.Column(db.Integer, nullable=False, default=0)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<ProductInventory {self.product_id!r}/{self.variant_label!r} stock={self.stock_units}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_label": self.variant_label,
            "stock_units": self.stock_units,
            "updated_at": to_utc_z(self.updated_at),
        }
