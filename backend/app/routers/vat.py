"""
app/routers/vat.py
VAT preview for the checkout page. Public (no auth): the preview must work while the
visitor is still filling in the address.

- POST /vat/calculate -> {"calculation": VatResult + formatted strings}
- GET  /vat/rates     -> active rates
- GET  /vat/rates/eu  -> active EU member rates
"""
from typing import List

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from backend.app.config import settings
from backend.app.core.errors import ValidationError
from backend.app.schemas.vat import (
    VatCalculateBody,
    VatCalculationOut,
    VatCalculationResponse,
    VatFormatted,
    VatInput,
    VatRate,
)
from backend.app.services.vat_calculator import (
    format_minor_units,
    format_vat_rate,
    validate_vat_input,
    vat_calculator,
)

router = APIRouter(prefix="/vat", tags=["VAT"])


def _invalid(details: List[str]) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Invalid VAT calculation data", "details": details})


@router.post("/calculate", response_model=VatCalculationResponse)
def calculate(payload: VatCalculateBody):
    # a blank field on the checkout form means a consumer
    customer_type = (payload.customer_type or "").strip() or "consumer"
    errors = validate_vat_input(
        payload.amount_minor_units,
        payload.shipping_amount_minor_units,
        payload.country_code,
        customer_type,
    )
    if errors:
        return _invalid(errors)

    try:
        result = vat_calculator.calculate_vat(VatInput(
            amount_minor_units=payload.amount_minor_units,
            shipping_amount_minor_units=payload.shipping_amount_minor_units,
            country_code=payload.country_code,
            customer_type=customer_type,
            business_vat_number=payload.business_vat_number,
        ))
    except ValidationError as e:
        return _invalid([e.message])

    currency = settings.currency
    formatted = VatFormatted(
        base_amount=format_minor_units(result.base_amount_minor_units, currency),
        shipping_amount=format_minor_units(result.shipping_amount_minor_units, currency),
        vat_amount=format_minor_units(result.vat_amount_minor_units, currency),
        total_amount=format_minor_units(result.total_amount_minor_units, currency),
        vat_rate=format_vat_rate(result.vat_rate),
    )
    return VatCalculationResponse(
        calculation=VatCalculationOut(**result.model_dump(), formatted=formatted)
    )


@router.get("/rates", response_model=List[VatRate])
def list_rates():
    return vat_calculator.get_all_vat_rates()


@router.get("/rates/eu", response_model=List[VatRate])
def list_eu_rates():
    return vat_calculator.get_eu_countries()
