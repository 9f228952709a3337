"""
app/schemas/vat.py - Pydantic models for VAT calculation.

Amounts are integer minor units; rates are Decimal fractions (0.21 == 21%).
"""
from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

CustomerType = Literal["consumer", "business"]


class VatRate(BaseModel):
    model_config = ConfigDict(frozen=True)

    country_code: str
    country_name: str
    rate: Decimal = Field(..., ge=0, le=1)
    is_eu_member: bool = True
    is_active: bool = True
    wine_specific_rate: Optional[Decimal] = Field(None, ge=0, le=1)
    valid_from: Optional[date] = None
    valid_until: Optional[date] = None

    @field_serializer("rate", "wine_specific_rate", when_used="json")
    def _rate_as_number(self, v: Optional[Decimal]) -> Optional[float]:
        return float(v) if v is not None else None

    def is_valid_on(self, day: date) -> bool:
        if self.valid_from and day < self.valid_from:
            return False
        if self.valid_until and day > self.valid_until:
            return False
        return True


class VatInput(BaseModel):
    """Calculator input. Negative amounts are rejected by the calculator, not here."""
    model_config = ConfigDict(frozen=True)

    amount_minor_units: int
    shipping_amount_minor_units: int = 0
    country_code: str
    customer_type: CustomerType = "consumer"
    business_vat_number: Optional[str] = None


class VatBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_vat: int
    shipping_vat: int


class VatResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_amount_minor_units: int
    shipping_amount_minor_units: int
    vat_rate: Decimal
    vat_amount_minor_units: int
    total_amount_minor_units: int
    country: str
    country_code: str
    is_reverse_charge: bool
    breakdown: VatBreakdown
    exemption_reason: Optional[str] = None

    @field_serializer("vat_rate", when_used="json")
    def _rate_as_number(self, v: Decimal) -> float:
        return float(v)


# ---------- endpoint bodies ----------
class VatCalculateBody(BaseModel):
    """POST /vat/calculate payload (display path: lenient, validated by the calculator)."""
    amount_minor_units: int = Field(..., description="Product amount in cents")
    shipping_amount_minor_units: int = Field(0, description="Shipping amount in cents")
    country_code: str = Field(..., description="ISO 3166-1 alpha-2 destination country")
    customer_type: str = Field("consumer", description="consumer | business")
    business_vat_number: Optional[str] = Field(None, description="Buyer VAT number (business only)")


class VatFormatted(BaseModel):
    base_amount: str
    shipping_amount: str
    vat_amount: str
    total_amount: str
    vat_rate: str


class VatCalculationOut(VatResult):
    formatted: VatFormatted


class VatCalculationResponse(BaseModel):
    calculation: VatCalculationOut
