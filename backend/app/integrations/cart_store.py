"""
app/integrations/cart_store.py - Client for the authoritative cart store.

The store is the set of /cart endpoints (see app/routers/carts.py). This module turns
HTTP outcomes into the cart error taxonomy:
- transport errors and timeouts -> NetworkError
- 401 on GET /cart               -> empty cart (anonymous visitors are expected)
- 401 on writes                  -> AuthRequiredError
- 404                            -> NotFoundError
- any other non-2xx              -> NetworkError carrying the body's `error` string
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from backend.app.config import settings
from backend.app.core.errors import AuthRequiredError, NetworkError, NotFoundError
from backend.app.schemas.cart import CartLine, CartSnapshot

logger = logging.getLogger("vallot.cart_store")


class CartStore(Protocol):
    """What the cart engine needs from the authoritative store."""

    async def fetch_cart(self) -> CartSnapshot: ...

    async def add_line(self, product_id: str, quantity: int) -> Optional[CartLine]: ...

    async def update_quantity(self, line_id: str, quantity: int) -> Optional[CartLine]: ...

    async def delete_line(self, line_id: str) -> None: ...


def _error_message(resp: httpx.Response, default: str) -> str:
    try:
        body = resp.json()
    except ValueError:
        return default
    if isinstance(body, dict):
        msg = body.get("error") or body.get("detail")
        if isinstance(msg, str) and msg:
            return msg
    return default


def _line_from(resp: httpx.Response) -> Optional[CartLine]:
    """Accept `{line: {...}}`, a bare line object, or a bare success signal."""
    if resp.status_code == 204 or not resp.content:
        return None
    try:
        body = resp.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    raw = body.get("line", body if "id" in body else None)
    if not raw:
        return None
    try:
        return CartLine.model_validate(raw)
    except ValueError as e:
        raise NetworkError("Cart service returned an unreadable line") from e


class HttpCartStore:
    """httpx-backed CartStore. One instance per user session (it carries the ID token)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        id_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.cart_store_base_url).rstrip("/"),
            timeout=timeout if timeout is not None else settings.cart_store_timeout_seconds,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        self.set_token(id_token)

    def set_token(self, id_token: Optional[str]) -> None:
        if id_token:
            self._client.headers["Authorization"] = f"Bearer {id_token}"
        else:
            self._client.headers.pop("Authorization", None)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpCartStore":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def _request(self, method: str, url: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            return await self._client.request(method, url, json=json)
        except httpx.TimeoutException as e:
            logger.warning("Cart store %s %s timed out: %s", method, url, e)
            raise NetworkError("The cart service did not respond in time") from e
        except httpx.HTTPError as e:
            logger.warning("Cart store %s %s failed: %s", method, url, e)
            raise NetworkError("Could not reach the cart service") from e

    def _raise_for_status(self, resp: httpx.Response, default: str) -> None:
        if resp.is_success:
            return
        message = _error_message(resp, default)
        if resp.status_code == 401:
            raise AuthRequiredError(message)
        if resp.status_code == 404:
            raise NotFoundError(message)
        raise NetworkError(message, status_code=resp.status_code)

    async def fetch_cart(self) -> CartSnapshot:
        resp = await self._request("GET", "/cart")
        if resp.status_code == 401:
            logger.debug("Cart fetch: user not authenticated, using empty cart")
            return CartSnapshot()
        self._raise_for_status(resp, "Failed to fetch cart")
        try:
            return CartSnapshot.from_payload(resp.json())
        except ValueError as e:
            raise NetworkError("Cart service returned an unreadable cart") from e

    async def add_line(self, product_id: str, quantity: int) -> Optional[CartLine]:
        resp = await self._request("POST", "/cart", json={"product_id": product_id, "quantity": quantity})
        if resp.status_code == 401:
            raise AuthRequiredError("Please sign in to add items to cart")
        self._raise_for_status(resp, "Failed to add item to cart")
        return _line_from(resp)

    async def update_quantity(self, line_id: str, quantity: int) -> Optional[CartLine]:
        resp = await self._request("PUT", f"/cart/{line_id}", json={"quantity": quantity})
        self._raise_for_status(resp, "Failed to update cart item")
        return _line_from(resp)

    async def delete_line(self, line_id: str) -> None:
        resp = await self._request("DELETE", f"/cart/{line_id}")
        self._raise_for_status(resp, "Failed to remove item")
