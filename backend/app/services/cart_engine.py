# app/services/cart_engine.py
"""
Cart reconciliation engine.

A `CartSession` holds one user's cart in memory and keeps it eventually consistent with
the authoritative store:

- quantity edits are applied to the snapshot immediately and recorded as one
  PendingMutation per line (latest edit wins)
- a single debounce timer per session coalesces bursts of edits into one flush
- a flush writes every pending line; all confirmed -> reconcile against a fresh store
  snapshot, any failure -> drop all pending, roll back to the last confirmed snapshot
  and re-fetch
- removals and additions go to the store right away

Store I/O is serialized by a lock; snapshot updates are synchronous swaps of frozen
CartSnapshot objects, so readers never see a half-applied change.

State machine (illegal transitions raise RuntimeError):

    CLEAN -> DIRTY          edit recorded
    DIRTY -> FLUSHING       flush started
    FLUSHING -> RECONCILING writes done, re-reading the store
    CLEAN|DIRTY -> RECONCILING   refresh / add / remove / clear
    RECONCILING -> CLEAN|DIRTY   depending on edits left to send
    DIRTY -> CLEAN          nothing left to send
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, TypeVar

from backend.app.config import settings
from backend.app.core.errors import CartError, InvalidAmount, NetworkError, NotFoundError, ValidationError
from backend.app.integrations.cart_store import CartStore
from backend.app.schemas.cart import CartSnapshot, PendingMutation
from backend.app.schemas.vat import VatInput, VatResult
from backend.app.services.vat_calculator import VatCalculator, vat_calculator

logger = logging.getLogger("vallot.cart")

T = TypeVar("T")


class CartState(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    FLUSHING = "flushing"
    RECONCILING = "reconciling"


_TRANSITIONS: Dict[CartState, Set[CartState]] = {
    CartState.CLEAN: {CartState.DIRTY, CartState.RECONCILING},
    CartState.DIRTY: {CartState.FLUSHING, CartState.RECONCILING, CartState.CLEAN},
    CartState.FLUSHING: {CartState.RECONCILING},
    CartState.RECONCILING: {CartState.CLEAN, CartState.DIRTY},
}


def _check_quantity(quantity) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        raise ValidationError("Quantity must be a non-negative integer")


class CartSession:
    """
    One user's cart. Create it when the session starts (`async with CartSession(store)`
    loads the cart), `close()` it on logout.
    """

    def __init__(
        self,
        store: CartStore,
        *,
        vat: Optional[VatCalculator] = None,
        debounce_seconds: Optional[float] = None,
        request_timeout: Optional[float] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self._store = store
        self._vat = vat or vat_calculator
        self._debounce = settings.cart_debounce_seconds if debounce_seconds is None else debounce_seconds
        self._timeout = settings.cart_store_timeout_seconds if request_timeout is None else request_timeout
        self._on_error = on_error

        self._state = CartState.CLEAN
        self._snapshot = CartSnapshot()
        self._confirmed = CartSnapshot()  # last state the store vouched for
        self._pending: Dict[str, PendingMutation] = {}
        self._removing: Set[str] = set()
        self._clock = itertools.count(1)
        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

        self._error: Optional[str] = None
        self.updating: Optional[str] = None

        self._shipping_minor_units = 0
        self._country_code = settings.seller_country
        self._customer_type = "consumer"
        self._business_vat_number: Optional[str] = None
        self._totals = self._totals_for(self._snapshot)

    async def __aenter__(self) -> "CartSession":
        await self.refresh()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ---------- read side ----------
    @property
    def snapshot(self) -> CartSnapshot:
        return self._snapshot

    @property
    def state(self) -> CartState:
        return self._state

    @property
    def pending(self) -> Dict[str, PendingMutation]:
        return dict(self._pending)

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def totals(self) -> VatResult:
        return self._totals

    @property
    def is_empty(self) -> bool:
        return self._snapshot.is_empty

    def dismiss_error(self) -> None:
        self._error = None

    # ---------- pricing ----------
    def update_shipping_cost(self, shipping_minor_units: int) -> None:
        if shipping_minor_units < 0:
            raise InvalidAmount("Shipping amount must be positive")
        totals = self._totals_for(self._snapshot, shipping_minor_units=shipping_minor_units)
        self._shipping_minor_units = shipping_minor_units
        self._totals = totals

    def set_destination(
        self,
        country_code: str,
        customer_type: str = "consumer",
        business_vat_number: Optional[str] = None,
    ) -> None:
        """Change the VAT destination. Rejected input leaves the session untouched."""
        totals = self._totals_for(
            self._snapshot,
            country_code=country_code,
            customer_type=customer_type,
            business_vat_number=business_vat_number or "",
        )
        self._country_code = country_code
        self._customer_type = customer_type
        self._business_vat_number = business_vat_number
        self._totals = totals

    def order_total(
        self,
        country_code: Optional[str] = None,
        customer_type: Optional[str] = None,
        business_vat_number: Optional[str] = None,
        shipping_minor_units: Optional[int] = None,
    ) -> VatResult:
        """VAT and grand total for the current snapshot; unspecified inputs use the session's."""
        return self._totals_for(
            self._snapshot,
            country_code=country_code or self._country_code,
            customer_type=customer_type or self._customer_type,
            business_vat_number=business_vat_number,
            shipping_minor_units=shipping_minor_units,
        )

    def _totals_for(
        self,
        snapshot: CartSnapshot,
        country_code: Optional[str] = None,
        customer_type: Optional[str] = None,
        business_vat_number: Optional[str] = None,
        shipping_minor_units: Optional[int] = None,
    ) -> VatResult:
        country_code = self._country_code if country_code is None else country_code
        customer_type = self._customer_type if customer_type is None else customer_type
        if not isinstance(country_code, str):
            raise ValidationError("Valid country code is required")
        if customer_type not in ("consumer", "business"):
            raise ValidationError("Customer type must be business or consumer")
        return self._vat.calculate_vat(VatInput(
            amount_minor_units=snapshot.subtotal_minor_units,
            shipping_amount_minor_units=(
                self._shipping_minor_units if shipping_minor_units is None else shipping_minor_units
            ),
            country_code=country_code,
            customer_type=customer_type,
            business_vat_number=(
                self._business_vat_number if business_vat_number is None else business_vat_number
            ),
        ))

    # ---------- mutations ----------
    async def add_line(self, product_id: str, quantity: int = 1) -> bool:
        """Add a product. Existing product -> quantity edit; new product -> store round trip."""
        _check_quantity(quantity)
        if quantity == 0:
            raise ValidationError("Quantity must be at least 1")
        self._ensure_open()

        existing = self._snapshot.line_for_product(product_id)
        if existing is not None:
            return await self.set_quantity(existing.id, existing.quantity + quantity)

        self._error = None
        self.updating = product_id
        try:
            async with self._lock:
                self._transition(CartState.RECONCILING)
                try:
                    try:
                        line = await self._call(self._store.add_line(product_id, quantity))
                    except CartError as e:
                        self._surface(e.message)
                        return False
                    if line is None:
                        await self._reconcile_locked()
                    else:
                        self._confirmed = self._confirmed.with_line(line)
                        self._publish(self._project(self._snapshot.with_line(line)))
                    logger.info("Added product %s x%d to cart", product_id, quantity)
                    return True
                finally:
                    self._settle()
        finally:
            self.updating = None

    async def set_quantity(self, line_id: str, quantity: int) -> bool:
        """
        Optimistic quantity edit. Returns as soon as the snapshot is updated; the write
        happens on the next debounced flush. 0 removes the line.
        """
        _check_quantity(quantity)
        self._ensure_open()
        if quantity == 0:
            return await self.remove_line(line_id)

        if self._snapshot.line(line_id) is None:
            self._surface("Item not found in cart")
            return False

        self._error = None
        self._publish(self._snapshot.with_quantity(line_id, quantity))
        self._record(line_id, quantity)
        if self._state is CartState.CLEAN:
            self._transition(CartState.DIRTY)
        self._schedule_flush()
        return True

    async def remove_line(self, line_id: str) -> bool:
        """Optimistic removal with an immediate delete; restores the prior snapshot on failure."""
        self._ensure_open()
        if self._snapshot.line(line_id) is None:
            self._surface("Item not found in cart")
            return False

        self._error = None
        prior = self._snapshot
        prior_pending = self._pending.pop(line_id, None)
        if not self._pending:
            self._cancel_timer()
        self._removing.add(line_id)
        self._publish(self._snapshot.without_line(line_id))

        self.updating = line_id
        try:
            async with self._lock:
                self._transition(CartState.RECONCILING)
                try:
                    try:
                        await self._call(self._store.delete_line(line_id))
                    except NotFoundError:
                        logger.info("Cart line %s was already gone server-side", line_id)
                    except CartError as e:
                        self._removing.discard(line_id)
                        self._publish(prior)
                        if prior_pending is not None and line_id not in self._pending:
                            self._pending[line_id] = prior_pending
                            self._schedule_flush()
                        self._surface(e.message)
                        return False
                    self._removing.discard(line_id)
                    self._confirmed = self._confirmed.without_line(line_id)
                    await self._reconcile_locked()
                    return True
                finally:
                    self._settle()
        finally:
            self._removing.discard(line_id)
            self.updating = None

    async def clear_cart(self) -> bool:
        """
        Delete every line, then re-read the store. A partial failure keeps whatever the
        store really holds afterwards; there is no rollback to the pre-clear cart.
        """
        self._ensure_open()
        if self._snapshot.is_empty:
            return True

        self._error = None
        line_ids = [line.id for line in self._snapshot.lines]
        async with self._lock:
            self._cancel_timer()
            self._pending.clear()
            self._transition(CartState.RECONCILING)
            try:
                results = await asyncio.gather(
                    *(self._call(self._store.delete_line(line_id)) for line_id in line_ids),
                    return_exceptions=True,
                )
                failures = self._failures(results)
                refresh_error = await self._reconcile_locked()
                if failures:
                    self._surface("Failed to clear some items from cart")
                    return False
                if refresh_error is not None:
                    self._confirmed = CartSnapshot()
                    self._publish(CartSnapshot())
                logger.info("Cleared %d cart line(s)", len(line_ids))
                return True
            finally:
                self._settle()

    async def refresh(self) -> CartSnapshot:
        """Replace the local cart with the store's, discarding every pending edit."""
        async with self._lock:
            self._cancel_timer()
            self._pending.clear()
            self._transition(CartState.RECONCILING)
            try:
                err = await self._reconcile_locked()
                if err is not None:
                    self._surface(err.message)
            finally:
                self._settle()
        return self._snapshot

    async def flush(self) -> bool:
        """
        Send every pending edit (one write per line). Normally fired by the debounce
        timer. All confirmed -> True. Any failure -> pending edits are dropped, the
        snapshot rolls back to the last confirmed state, the store is re-read, False.
        """
        async with self._lock:
            if not self._pending:
                if self._state is CartState.DIRTY:
                    self._transition(CartState.CLEAN)
                return True
            self._cancel_timer()
            batch = self._pending
            self._pending = {}
            self._transition(CartState.FLUSHING)
            try:
                results = await asyncio.gather(
                    *(self._call(self._store.update_quantity(m.line_id, m.target_quantity))
                      for m in batch.values()),
                    return_exceptions=True,
                )
            finally:
                self._transition(CartState.RECONCILING)
            try:
                return await self._after_flush(batch, results)
            finally:
                self._settle()

    async def wait_idle(self) -> None:
        """Wait until no flush is scheduled or running."""
        loop = asyncio.get_running_loop()
        while self._timer is not None or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(max(self._timer.when() - loop.time(), 0))

    async def close(self, flush_pending: bool = False) -> None:
        """Tear down: stop the timer and let in-flight flushes finish."""
        self._cancel_timer()
        if flush_pending and self._pending:
            await self.flush()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._closed = True
        if self._pending:
            logger.info("Cart session closed with %d unsent edit(s)", len(self._pending))
            self._pending.clear()
        if self._state is CartState.DIRTY:
            self._transition(CartState.CLEAN)

    # ---------- internals ----------
    async def _after_flush(self, batch: Dict[str, PendingMutation], results: List[object]) -> bool:
        failures = self._failures(results)
        if not failures:
            logger.debug("Flushed %d cart line(s)", len(batch))
            if await self._reconcile_locked() is not None:
                confirmed = self._confirmed
                for m in batch.values():
                    confirmed = confirmed.with_quantity(m.line_id, m.target_quantity)
                self._confirmed = confirmed
            return True

        self._cancel_timer()
        self._pending.clear()
        hard = [f for f in failures if not isinstance(f, NotFoundError)]
        if hard:
            logger.warning("Cart flush failed (%d of %d writes): %s", len(failures), len(batch), hard[0].message)
            self._publish(self._confirmed)
            self._surface(hard[0].message)
        else:
            logger.info("Cart flush hit %d line(s) removed server-side, refreshing", len(failures))
        await self._reconcile_locked()
        return False

    async def _reconcile_locked(self) -> Optional[CartError]:
        """Re-read the store; authoritative state wins, edits still pending are re-applied."""
        try:
            server = await self._call(self._store.fetch_cart())
        except CartError as e:
            logger.warning("Cart refresh failed: %s", e.message)
            return e
        self._confirmed = server
        self._publish(self._project(server))
        return None

    def _project(self, base: CartSnapshot) -> CartSnapshot:
        snapshot = base
        for line_id in self._removing:
            snapshot = snapshot.without_line(line_id)
        for m in self._pending.values():
            if snapshot.line(m.line_id) is not None:
                snapshot = snapshot.with_quantity(m.line_id, m.target_quantity)
        return snapshot

    def _publish(self, snapshot: CartSnapshot) -> None:
        totals = self._totals_for(snapshot)
        self._snapshot = snapshot
        self._totals = totals

    def _record(self, line_id: str, quantity: int) -> None:
        mutation = PendingMutation(line_id=line_id, target_quantity=quantity, issued_at=next(self._clock))
        current = self._pending.get(line_id)
        if current is None or mutation.issued_at > current.issued_at:
            self._pending[line_id] = mutation

    async def _call(self, aw: Awaitable[T]) -> T:
        if not self._timeout:
            return await aw
        try:
            return await asyncio.wait_for(aw, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError("The cart service did not respond in time") from e

    @staticmethod
    def _failures(results: Iterable[object]) -> List[CartError]:
        failures: List[CartError] = []
        for r in results:
            if isinstance(r, CartError):
                failures.append(r)
            elif isinstance(r, BaseException):
                raise r
        return failures

    def _schedule_flush(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._debounce, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        task = asyncio.ensure_future(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._forget_task)

    def _forget_task(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Debounced cart flush crashed", exc_info=task.exception())

    def _transition(self, new_state: CartState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal cart state transition {self._state.value} -> {new_state.value}")
        logger.debug("Cart state %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    def _settle(self) -> None:
        self._transition(CartState.DIRTY if self._pending else CartState.CLEAN)

    def _surface(self, message: str) -> None:
        self._error = message
        logger.warning("Cart error surfaced: %s", message)
        if self._on_error is not None:
            self._on_error(message)

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Cart session is closed")
