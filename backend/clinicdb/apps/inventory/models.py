from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from clinicdb.database import Base
from clinicdb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MovementTypeEnum(str, enum.Enum):
    IN = "in"
    OUT = "out"


class InventoryItem(Base):
    """
    Ledger row: stock of one product held by one clinic.

    `quantity_in_stock` always equals the sum of its lots' quantities.
    `version_id` is bumped on every update; a concurrent writer holding a
    stale version fails its flush with StaleDataError and is retried.
    """

    __tablename__ = "inventory_items"
    __table_args__ = (
        UniqueConstraint("clinic_id", "product_id", name="uq_inventory_item_clinic_product"),
        Index("ix_inventory_items_clinic", "clinic_id"),
        CheckConstraint("quantity_in_stock >= 0", name="ck_inventory_items_quantity_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    clinic_id = Column(String(36), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    quantity_in_stock = Column(Integer, nullable=False, default=0)
    minimum_stock_level = Column(Integer, nullable=False, default=0)

    last_movement_type = Column(
        SAEnum(MovementTypeEnum, name="inventory_movement_type_enum", native_enum=False),
        nullable=True,
    )
    last_movement_quantity = Column(Integer, nullable=True)
    last_movement_reference_id = Column(String(64), nullable=True)
    last_movement_at = Column(DateTime(timezone=True), nullable=True)

    last_update = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    version_id = Column(Integer, nullable=False)

    lots = relationship(
        "InventoryLot",
        back_populates="item",
        lazy="selectin",
        order_by=lambda: [InventoryLot.expiration_date, InventoryLot.lot_code],
        cascade="all, delete-orphan",
    )
    product = relationship("Product", lazy="select")

    __mapper_args__ = {"version_id_col": version_id}

    def find_lot(self, expiration_date, lot_code: str):
        for lot in self.lots:
            if lot.expiration_date == expiration_date and lot.lot_code == lot_code:
                return lot
        return None

    @property
    def lots_total(self) -> int:
        return sum(lot.quantity for lot in self.lots)


class InventoryLot(Base):
    __tablename__ = "inventory_lots"
    __table_args__ = (
        UniqueConstraint("item_id", "expiration_date", "lot_code", name="uq_inventory_lot_key"),
        Index("ix_inventory_lots_expiration", "expiration_date"),
        CheckConstraint("quantity > 0", name="ck_inventory_lots_quantity_positive"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    item_id = Column(String(36), ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False, index=True)
    expiration_date = Column(Date, nullable=False)
    lot_code = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    item = relationship("InventoryItem", back_populates="lots")
