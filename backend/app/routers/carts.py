"""
app/routers/carts.py
Authoritative cart store endpoints (logged-in users). The storefront's CartSession talks
to these through app/integrations/cart_store.py.

Behavior
- GET /cart returns every line plus a summary; all money is integer cents.
- POST /cart adds a product, merging into the existing line for that product. The unit
  price is snapshotted from the catalog when the line is created.
- PUT /cart/{line_id} sets a quantity; 0 removes the line.
- DELETE /cart/{line_id} removes a line.

Errors come back as {"error": "..."} (see main.py): 404 unknown product/line,
409 insufficient stock, 401 without a valid Firebase ID token.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Response, status

from backend.app.config import get_db
from backend.app.core.security import get_current_user
from backend.app.repositories import carts as repo
from backend.app.schemas.cart import AddLineBody, CartLine, CartOut, LineOut, UpdateLineBody

logger = logging.getLogger("vallot.carts")

router = APIRouter(prefix="/cart", tags=["Cart"])


def _find(lines, line_id: str) -> Dict[str, Any]:
    for it in lines:
        if it.get("id") == line_id:
            return it
    raise HTTPException(status_code=404, detail="Cart item not found")


def _require_stock(product: Dict[str, Any], quantity: int) -> None:
    if not repo.stock_allows(product, quantity):
        raise HTTPException(status_code=409, detail="Insufficient stock available")


@router.get("", response_model=CartOut)
def get_cart(current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    """Return the full cart: lines and summary (item_count, total_quantity, subtotal)."""
    lines = repo.load_lines(db, current_user["id"])
    return CartOut.from_snapshot(repo.to_snapshot(lines))


@router.post("", response_model=LineOut, status_code=status.HTTP_201_CREATED)
def add_line(payload: AddLineBody, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    """
    Add product to the cart. If the product already has a line, its quantity grows and
    the existing line (same id, same price snapshot) is returned.
    """
    uid = current_user["id"]
    product = repo.get_product(db, payload.product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")

    lines = repo.load_lines(db, uid)
    for it in lines:
        if it.get("product_id") == payload.product_id:
            new_qty = int(it.get("quantity", 0)) + payload.quantity
            _require_stock(product, new_qty)
            it["quantity"] = new_qty
            line = it
            break
    else:
        _require_stock(product, payload.quantity)
        line = {
            "id": repo.new_line_id(),
            "product_id": payload.product_id,
            "quantity": payload.quantity,
            "unit_price_minor_units": repo.price_minor_units(product),
            "name": product.get("name") or product.get("title"),
        }
        lines.append(line)

    repo.save_lines(db, uid, lines)
    logger.info("cart %s: product %s now x%d", uid, payload.product_id, line["quantity"])
    return LineOut(line=CartLine.model_validate(line))


@router.put("/{line_id}", response_model=LineOut)
def update_line(
    line_id: str,
    payload: UpdateLineBody,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    """Set one line's quantity. Quantity 0 removes the line and returns {"line": null}."""
    uid = current_user["id"]
    lines = repo.load_lines(db, uid)
    line = _find(lines, line_id)

    if payload.quantity == 0:
        repo.save_lines(db, uid, [it for it in lines if it.get("id") != line_id])
        return LineOut(line=None)

    product = repo.get_product(db, line["product_id"])
    if product is not None:
        _require_stock(product, payload.quantity)
    line["quantity"] = payload.quantity
    repo.save_lines(db, uid, lines)
    return LineOut(line=CartLine.model_validate(line))


@router.delete("/{line_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_line(line_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    """Remove one line by its id."""
    uid = current_user["id"]
    lines = repo.load_lines(db, uid)
    _find(lines, line_id)
    repo.save_lines(db, uid, [it for it in lines if it.get("id") != line_id])
    return Response(status_code=status.HTTP_204_NO_CONTENT)
