# app/services/vat_calculator.py
"""
VAT calculation for EU wine sales.

Everything here works on integer minor units (cents). Rates are Decimal fractions and
the only rounding step is `_round_minor`, which rounds half-up at cent granularity.
Product and shipping VAT are rounded separately and then summed; rounding the combined
base gives different totals at the cent level and is not what the shop invoices.

The calculator is pure: the rate table and the seller country are constructor inputs,
there is no clock, locale or global state involved in `calculate_vat`.
"""
from __future__ import annotations

import logging
import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from backend.app.config import settings
from backend.app.core.errors import InvalidAmount
from backend.app.schemas.vat import VatBreakdown, VatInput, VatRate, VatResult

logger = logging.getLogger("vallot.vat")

UNKNOWN_COUNTRY = "Unknown"
REVERSE_CHARGE_REASON = "Reverse charge - B2B transaction"
NON_EU_REASON = "Non-EU country"

_VAT_NUMBER_PATTERN = re.compile(r"^[A-Z]{2}[A-Z0-9]{2,12}$")
_CURRENCY_SYMBOLS = {"EUR": "€", "USD": "$", "GBP": "£"}


def _eu(code: str, name: str, rate: str) -> VatRate:
    return VatRate(country_code=code, country_name=name, rate=Decimal(rate), is_eu_member=True)


# EU standard VAT rates applied to wine (2024)
DEFAULT_VAT_RATES: Dict[str, VatRate] = {r.country_code: r for r in (
    _eu("AT", "Austria", "0.20"),
    _eu("BE", "Belgium", "0.21"),
    _eu("BG", "Bulgaria", "0.20"),
    _eu("HR", "Croatia", "0.25"),
    _eu("CY", "Cyprus", "0.19"),
    _eu("CZ", "Czech Republic", "0.21"),
    _eu("DK", "Denmark", "0.25"),
    _eu("EE", "Estonia", "0.20"),
    _eu("FI", "Finland", "0.24"),
    _eu("FR", "France", "0.20"),
    _eu("DE", "Germany", "0.19"),
    _eu("GR", "Greece", "0.24"),
    _eu("HU", "Hungary", "0.27"),
    _eu("IE", "Ireland", "0.23"),
    _eu("IT", "Italy", "0.22"),
    _eu("LV", "Latvia", "0.21"),
    _eu("LT", "Lithuania", "0.21"),
    _eu("LU", "Luxembourg", "0.17"),
    _eu("MT", "Malta", "0.18"),
    _eu("NL", "Netherlands", "0.21"),
    _eu("PL", "Poland", "0.23"),
    _eu("PT", "Portugal", "0.23"),
    _eu("RO", "Romania", "0.19"),
    _eu("SK", "Slovakia", "0.20"),
    _eu("SI", "Slovenia", "0.22"),
    _eu("ES", "Spain", "0.21"),
    _eu("SE", "Sweden", "0.25"),
)}


def _round_minor(amount_minor_units: int, rate: Decimal) -> int:
    return int((Decimal(amount_minor_units) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_country_code(country_code: Optional[str]) -> str:
    return (country_code or "").strip().upper()


def is_plausible_vat_number(vat_number: Optional[str]) -> bool:
    """Format check only (country prefix + 2-12 alphanumerics); no VIES lookup."""
    if not vat_number:
        return False
    clean = re.sub(r"\s", "", vat_number).upper()
    return bool(_VAT_NUMBER_PATTERN.match(clean))


class VatCalculator:
    def __init__(self, rates: Optional[Mapping[str, VatRate]] = None, seller_country: str = "FR"):
        table = DEFAULT_VAT_RATES if rates is None else rates
        self._rates: Dict[str, VatRate] = {normalize_country_code(k): v for k, v in table.items()}
        self.seller_country = normalize_country_code(seller_country)

    def get_vat_rate(self, country_code: str, on: Optional[date] = None) -> Optional[VatRate]:
        entry = self._rates.get(normalize_country_code(country_code))
        if entry is None or not entry.is_active:
            return None
        if on is not None and not entry.is_valid_on(on):
            return None
        return entry

    def should_apply_reverse_charge(
        self,
        country_code: str,
        customer_type: str,
        business_vat_number: Optional[str],
        on: Optional[date] = None,
    ) -> bool:
        if customer_type != "business":
            return False
        if not is_plausible_vat_number(business_vat_number):
            return False
        entry = self.get_vat_rate(country_code, on)
        if entry is None or not entry.is_eu_member:
            return False
        return normalize_country_code(country_code) != self.seller_country

    def calculate_vat(self, data: VatInput, on: Optional[date] = None) -> VatResult:
        """
        Itemized VAT for one order.

        - unknown country: rate 0, country "Unknown" (never an error, the checkout
          preview must keep working while the address is being typed)
        - non-EU country: no VAT, not reverse charge
        - EU B2B outside the seller country with a plausible VAT number: reverse charge
        - otherwise: round(amount * rate) + round(shipping * rate), half-up per part

        `on` restricts lookups to rates valid on that day; without it validity windows
        are ignored.
        """
        amount = data.amount_minor_units
        shipping = data.shipping_amount_minor_units or 0
        if amount < 0:
            raise InvalidAmount("Amount must be positive")
        if shipping < 0:
            raise InvalidAmount("Shipping amount must be positive")

        country_code = normalize_country_code(data.country_code)
        entry = self.get_vat_rate(country_code, on)
        if entry is None:
            logger.debug("No VAT rate for %r, falling back to zero rate", country_code)
        is_reverse_charge = self.should_apply_reverse_charge(
            country_code, data.customer_type, data.business_vat_number, on
        )

        if entry is None or not entry.is_eu_member or is_reverse_charge:
            rate = Decimal("0")
        elif entry.wine_specific_rate is not None:
            rate = entry.wine_specific_rate
        else:
            rate = entry.rate

        product_vat = _round_minor(amount, rate)
        shipping_vat = _round_minor(shipping, rate)
        vat_amount = product_vat + shipping_vat

        if is_reverse_charge:
            reason = REVERSE_CHARGE_REASON
        elif entry is None or not entry.is_eu_member:
            reason = NON_EU_REASON
        else:
            reason = None

        return VatResult(
            base_amount_minor_units=amount,
            shipping_amount_minor_units=shipping,
            vat_rate=rate,
            vat_amount_minor_units=vat_amount,
            total_amount_minor_units=amount + shipping + vat_amount,
            country=entry.country_name if entry else UNKNOWN_COUNTRY,
            country_code=country_code,
            is_reverse_charge=is_reverse_charge,
            breakdown=VatBreakdown(product_vat=product_vat, shipping_vat=shipping_vat),
            exemption_reason=reason,
        )

    def calculate_vat_for_items(
        self,
        item_amounts_minor_units: Iterable[int],
        country_code: str,
        shipping_amount_minor_units: int = 0,
        customer_type: str = "consumer",
        business_vat_number: Optional[str] = None,
    ) -> VatResult:
        """VAT on the summed line totals of an order (one rounding per part, not per line)."""
        amounts = list(item_amounts_minor_units)
        if any(a < 0 for a in amounts):
            raise InvalidAmount("Amount must be positive")
        return self.calculate_vat(VatInput(
            amount_minor_units=sum(amounts),
            shipping_amount_minor_units=shipping_amount_minor_units,
            country_code=country_code,
            customer_type=customer_type,
            business_vat_number=business_vat_number,
        ))

    def get_all_vat_rates(self) -> List[VatRate]:
        return [r for r in self._rates.values() if r.is_active]

    def get_eu_countries(self) -> List[VatRate]:
        return [r for r in self.get_all_vat_rates() if r.is_eu_member]

    def is_eu_country(self, country_code: str) -> bool:
        entry = self.get_vat_rate(country_code)
        return bool(entry and entry.is_eu_member)


# ---------- display helpers (render step only) ----------
def format_minor_units(amount_minor_units: int, currency: str = "EUR") -> str:
    """fr-FR style money string: 765000 -> '7 650,00 €' (narrow nbsp grouping)."""
    major = (Decimal(amount_minor_units) / 100).quantize(Decimal("0.01"))
    text = f"{major:,.2f}".replace(",", "\u202f").replace(".", ",")
    code = (currency or "EUR").upper()
    return f"{text}\u00a0{_CURRENCY_SYMBOLS.get(code, code)}"


def format_vat_rate(rate) -> str:
    return f"{Decimal(str(rate)) * 100:.0f}%"


def validate_vat_input(
    amount_minor_units: int,
    shipping_amount_minor_units: Optional[int],
    country_code: Optional[str],
    customer_type: Optional[str],
) -> List[str]:
    """Human readable problems with a VAT request; empty list when it is usable."""
    errors: List[str] = []
    if amount_minor_units < 0:
        errors.append("Amount must be positive")
    if shipping_amount_minor_units and shipping_amount_minor_units < 0:
        errors.append("Shipping amount must be positive")
    if len(normalize_country_code(country_code)) != 2:
        errors.append("Valid country code is required")
    if (customer_type or "").strip() not in ("", "business", "consumer"):
        errors.append("Customer type must be business or consumer")
    return errors


# Default instance for the checkout preview and order finalization
vat_calculator = VatCalculator(seller_country=settings.seller_country)


def calculate_vat(data: Optional[VatInput] = None, **fields) -> VatResult:
    return vat_calculator.calculate_vat(data if data is not None else VatInput(**fields))


def is_eu_country(country_code: str) -> bool:
    return vat_calculator.is_eu_country(country_code)
