"""
Shared fixtures: an in-memory Firestore double for the store endpoints and an
in-memory CartStore for the cart engine.
"""
import asyncio
import copy
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

import pytest
from fastapi.testclient import TestClient

from backend.app.config import get_db
from backend.app.core.errors import AuthRequiredError, NetworkError, NotFoundError
from backend.app.core.security import get_current_user
from backend.app.main import app
from backend.app.schemas.cart import CartLine, CartSnapshot
from backend.app.services.cart_engine import CartSession
from backend.app.services.vat_calculator import VatCalculator


# ====================
# Firestore double
# ====================


class _Snap:
    def __init__(self, data: Optional[Dict[str, Any]]):
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._data)


class _Doc:
    def __init__(self, docs: Dict[str, Dict[str, Any]], key: str):
        self._docs = docs
        self._key = key

    def get(self) -> _Snap:
        return _Snap(self._docs.get(self._key))

    def set(self, data: Dict[str, Any], merge: bool = False) -> None:
        self._docs[self._key] = copy.deepcopy(data)

    def delete(self) -> None:
        self._docs.pop(self._key, None)


class _Collection:
    def __init__(self, docs: Dict[str, Dict[str, Any]]):
        self._docs = docs

    def document(self, key: str) -> _Doc:
        return _Doc(self._docs, key)


class FakeFirestore:
    def __init__(self):
        self.data: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)

    def collection(self, name: str) -> _Collection:
        return _Collection(self.data[name])


@pytest.fixture
def fake_db():
    db = FakeFirestore()
    db.collection("products").document("clos-vallot-2019").set(
        {"name": "Clos Vallot 2019", "price_minor_units": 2550, "stock_quantity": 10}
    )
    db.collection("products").document("cuvee-prestige").set(
        {"name": "Cuvée Prestige", "price_minor_units": 4200, "final_price_minor_units": 3990}
    )
    db.collection("products").document("retired").set(
        {"name": "Old Vintage", "price_minor_units": 1000, "is_active": False}
    )
    return db


@pytest.fixture
def client(fake_db):
    app.dependency_overrides[get_db] = lambda: fake_db
    app.dependency_overrides[get_current_user] = lambda: {"id": "user-1", "email": None, "is_guest": False}
    yield TestClient(app)
    app.dependency_overrides.clear()


# ====================
# CartStore double
# ====================


class FakeCartStore:
    """In-memory authoritative store that records every call and can be told to fail."""

    def __init__(self, lines: List[CartLine], prices: Dict[str, int]):
        self.lines: Dict[str, CartLine] = {line.id: line for line in lines}
        self.prices = prices
        self.calls: List[tuple] = []
        self.fail_fetch = False
        self.fail_add: Optional[Exception] = None
        self.fail_updates = False
        self.fail_deletes: Set[str] = set()
        self.update_delay = 0.0
        self.gate: Optional[asyncio.Event] = None
        self._next_id = 100

    def calls_of(self, kind: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == kind]

    async def fetch_cart(self) -> CartSnapshot:
        self.calls.append(("fetch",))
        if self.fail_fetch:
            raise NetworkError("Failed to fetch cart")
        return CartSnapshot(lines=tuple(self.lines.values()))

    async def add_line(self, product_id: str, quantity: int) -> Optional[CartLine]:
        self.calls.append(("add", product_id, quantity))
        if self.fail_add is not None:
            raise self.fail_add
        if product_id not in self.prices:
            raise NotFoundError("Product not found")
        self._next_id += 1
        line = CartLine(
            id=f"line-{self._next_id}",
            product_id=product_id,
            quantity=quantity,
            unit_price_minor_units=self.prices[product_id],
        )
        self.lines[line.id] = line
        return line

    async def update_quantity(self, line_id: str, quantity: int) -> Optional[CartLine]:
        self.calls.append(("update", line_id, quantity))
        if self.gate is not None:
            await self.gate.wait()
        if self.update_delay:
            await asyncio.sleep(self.update_delay)
        if self.fail_updates:
            raise NetworkError("Failed to update cart item")
        if line_id not in self.lines:
            raise NotFoundError("Cart item not found")
        line = self.lines[line_id].model_copy(update={"quantity": quantity})
        self.lines[line_id] = line
        return line

    async def delete_line(self, line_id: str) -> None:
        self.calls.append(("delete", line_id))
        if line_id in self.fail_deletes:
            raise NetworkError("Failed to remove item")
        if line_id not in self.lines:
            raise NotFoundError("Cart item not found")
        del self.lines[line_id]


@pytest.fixture
def store():
    return FakeCartStore(
        lines=[
            CartLine(id="line-1", product_id="clos-vallot-2019", quantity=1, unit_price_minor_units=7650),
            CartLine(id="line-2", product_id="cuvee-prestige", quantity=2, unit_price_minor_units=1250),
        ],
        prices={"clos-vallot-2019": 7650, "cuvee-prestige": 1250, "cremant": 1890},
    )


@pytest.fixture
def errors():
    return []


@pytest.fixture
def session(store, errors):
    return CartSession(
        store,
        vat=VatCalculator(seller_country="FR"),
        debounce_seconds=0.01,
        request_timeout=1.0,
        on_error=errors.append,
    )


@pytest.fixture
def auth_error():
    return AuthRequiredError("Please sign in to add items to cart")
