import uuid
from typing import Any, Dict, List, Optional

from backend.app.config import settings
from backend.app.schemas.cart import CartLine, CartSnapshot

CARTS = "carts"
PRODUCTS = "products"


def new_line_id() -> str:
    return str(uuid.uuid4())


def load_lines(db, uid: str) -> List[Dict[str, Any]]:
    snap = db.collection(settings.collection(CARTS)).document(uid).get()
    if not snap.exists:
        return []
    data = snap.to_dict() or {}
    return [dict(it) for it in data.get("lines", []) if int(it.get("quantity", 0) or 0) > 0]


def save_lines(db, uid: str, lines: List[Dict[str, Any]]) -> None:
    ref = db.collection(settings.collection(CARTS)).document(uid)
    if lines:
        ref.set({"lines": lines})
    else:
        ref.delete()


def get_product(db, product_id: str) -> Optional[Dict[str, Any]]:
    snap = db.collection(settings.collection(PRODUCTS)).document(product_id).get()
    if not snap.exists:
        return None
    data = snap.to_dict() or {}
    if data.get("is_active") is False:
        return None
    data["id"] = product_id
    return data


def price_minor_units(product: Dict[str, Any]) -> int:
    # Prefer final_price (discounted) if present; else price. Both stored in cents.
    if product.get("final_price_minor_units") is not None:
        return int(product["final_price_minor_units"])
    return int(product.get("price_minor_units", 0) or 0)


def stock_allows(product: Dict[str, Any], quantity: int) -> bool:
    stock = product.get("stock_quantity")
    return stock is None or quantity <= int(stock)


def to_snapshot(lines: List[Dict[str, Any]]) -> CartSnapshot:
    return CartSnapshot(lines=tuple(CartLine.model_validate(it) for it in lines))
