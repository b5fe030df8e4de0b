"""
Inventory Ledger: per-SKU stock reservations with a no-oversell guarantee.

Every decrement is a single conditional update (`stock >= quantity` matched and
decremented in the same write), so concurrent checkouts in other processes can never
drive stock below zero. Within this process, calls for the same SKU are also
serialised by a per-SKU lock; different SKUs proceed in parallel. A multi-line
reservation takes its SKU locks in sorted order and undoes its own decrements before
releasing them, so no other reservation in this process observes a partial order.
"""
import logging
import threading
from collections import OrderedDict
from contextlib import ExitStack
from typing import Dict, Iterable, List, Tuple

from errors import OutOfStock
from repositories import ProductRepository
from schemas import OrderItem, Product

logger = logging.getLogger(__name__)


def merge_lines(lines: Iterable[Tuple[str, int]]) -> "OrderedDict[str, int]":
    """Sum quantities per SKU, ordered by SKU so locks are always taken in the same order."""
    merged: Dict[str, int] = {}
    for sku, quantity in lines:
        if quantity < 1:
            raise ValueError(f"Quantity for {sku} must be at least 1")
        merged[sku] = merged.get(sku, 0) + quantity
    return OrderedDict(sorted(merged.items()))


def lines_of(items: Iterable[OrderItem]) -> List[Tuple[str, int]]:
    return [(item.sku, item.quantity) for item in items]


class InventoryLedger:
    def __init__(self, products: ProductRepository, low_stock_threshold: int = 10):
        self.products = products
        self.low_stock_threshold = low_stock_threshold
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, sku: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(sku)
            if lock is None:
                lock = self._locks[sku] = threading.Lock()
            return lock

    def reserve(self, sku: str, quantity: int) -> None:
        """Atomically take `quantity` units of `sku`. Raises OutOfStock, touching nothing."""
        self.reserve_all([(sku, quantity)])

    def release(self, sku: str, quantity: int) -> None:
        self.release_all([(sku, quantity)])

    def reserve_all(self, lines: Iterable[Tuple[str, int]]) -> None:
        """Reserve every line or none of them."""
        merged = merge_lines(lines)
        taken: List[Tuple[str, int]] = []
        with ExitStack() as stack:
            for sku in merged:
                stack.enter_context(self._lock_for(sku))
            for sku, quantity in merged.items():
                if not self.products.decrement_if_available(sku, quantity):
                    self._undo(taken)
                    logger.info("Reservation refused: %s x%d not available", sku, quantity)
                    raise OutOfStock(sku, quantity)
                taken.append((sku, quantity))
        logger.debug("Reserved %s", dict(merged))

    def release_all(self, lines: Iterable[Tuple[str, int]]) -> None:
        merged = merge_lines(lines)
        with ExitStack() as stack:
            for sku in merged:
                stack.enter_context(self._lock_for(sku))
            self._undo(list(merged.items()))

    def _undo(self, taken: List[Tuple[str, int]]) -> None:
        for sku, quantity in taken:
            if not self.products.increment(sku, quantity):
                logger.warning("Cannot restock unknown SKU %s (%d units)", sku, quantity)

    def threshold_for(self, product: Product) -> int:
        if product.low_stock_threshold is None:
            return self.low_stock_threshold
        return product.low_stock_threshold

    def is_low_stock(self, sku: str) -> bool:
        product = self.products.get_by_sku(sku)
        if product is None:
            return False
        return product.stock <= self.threshold_for(product)

    def inventory(self, low_stock_only: bool = False) -> List[Product]:
        products = self.products.list_active()
        if low_stock_only:
            products = [p for p in products if p.stock <= self.threshold_for(p)]
        return products

    def stock_of(self, sku: str) -> int:
        product = self.products.get_by_sku(sku)
        return product.stock if product else 0
