"""
app/schemas/cart.py - Pydantic models for the cart.

All money is integer minor units (cents). Line totals and snapshot totals are
computed fields derived from quantity and unit price, never stored on their own,
so a snapshot can't drift from its lines.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class CartLine(BaseModel):
    """One product in the cart. `id` is the line id, stable across quantity edits."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Cart line ID")
    product_id: str = Field(..., description="Catalog product ID (opaque)")
    quantity: int = Field(..., ge=0, description="Quantity; 0 means deleted")
    unit_price_minor_units: int = Field(..., ge=0, description="Unit price snapshot in cents")
    name: Optional[str] = Field(None, description="Product name for display")

    @computed_field
    @property
    def line_total_minor_units(self) -> int:
        return self.quantity * self.unit_price_minor_units


class CartSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_count: int = 0
    total_quantity: int = 0
    subtotal_minor_units: int = 0


class CartSnapshot(BaseModel):
    """
    Reconciled cart state. Frozen: every change produces a new snapshot, so a reader
    holding a reference never sees it half-updated.
    Lines with quantity 0 are dropped on construction.
    """
    model_config = ConfigDict(frozen=True)

    lines: Tuple[CartLine, ...] = ()

    @field_validator("lines")
    @classmethod
    def _drop_deleted(cls, v: Tuple[CartLine, ...]) -> Tuple[CartLine, ...]:
        return tuple(line for line in v if line.quantity > 0)

    @computed_field
    @property
    def item_count(self) -> int:
        return len(self.lines)

    @computed_field
    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    @computed_field
    @property
    def subtotal_minor_units(self) -> int:
        return sum(line.line_total_minor_units for line in self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def summary(self) -> CartSummary:
        return CartSummary(
            item_count=self.item_count,
            total_quantity=self.total_quantity,
            subtotal_minor_units=self.subtotal_minor_units,
        )

    def line(self, line_id: str) -> Optional[CartLine]:
        for line in self.lines:
            if line.id == line_id:
                return line
        return None

    def line_for_product(self, product_id: str) -> Optional[CartLine]:
        for line in self.lines:
            if line.product_id == product_id:
                return line
        return None

    def with_quantity(self, line_id: str, quantity: int) -> "CartSnapshot":
        lines = tuple(
            line.model_copy(update={"quantity": quantity}) if line.id == line_id else line
            for line in self.lines
        )
        return CartSnapshot(lines=lines)

    def without_line(self, line_id: str) -> "CartSnapshot":
        return CartSnapshot(lines=tuple(line for line in self.lines if line.id != line_id))

    def with_line(self, new_line: CartLine) -> "CartSnapshot":
        """Insert or replace a line, keeping the position of an existing one."""
        if self.line(new_line.id) is None:
            return CartSnapshot(lines=self.lines + (new_line,))
        return CartSnapshot(lines=tuple(new_line if line.id == new_line.id else line for line in self.lines))

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "CartSnapshot":
        """Build a snapshot from the store's `{lines: [...], summary: {...}}` body."""
        raw_lines = (data or {}).get("lines") or []
        return cls(lines=tuple(CartLine.model_validate(raw) for raw in raw_lines))


@dataclass(frozen=True)
class PendingMutation:
    """An optimistic quantity change not yet confirmed by the store."""
    line_id: str
    target_quantity: int
    issued_at: int


# ---------- store request bodies ----------
class AddLineBody(BaseModel):
    product_id: str = Field(..., description="Product ID")
    quantity: int = Field(1, ge=1, le=10000, description="Quantity (>=1).")

    @field_validator("product_id")
    @classmethod
    def _clean_pid(cls, v: str) -> str:
        v = (v or "").strip()
        for ch in ("\u200b", "\u200c", "\u200d", "\ufeff", "\xa0"):
            v = v.replace(ch, "")
        if not v:
            raise ValueError("product_id cannot be empty")
        return v


class UpdateLineBody(BaseModel):
    quantity: int = Field(..., ge=0, le=10000, description="New quantity; 0 removes the line.")


class CartOut(BaseModel):
    lines: Tuple[CartLine, ...] = ()
    summary: CartSummary = Field(default_factory=CartSummary)

    @classmethod
    def from_snapshot(cls, snapshot: CartSnapshot) -> "CartOut":
        return cls(lines=snapshot.lines, summary=snapshot.summary())


class LineOut(BaseModel):
    line: Optional[CartLine] = None
