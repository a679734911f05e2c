"""
Order store and execution queue.

Only the engine mutates either structure. The store optionally mirrors itself
to a JSON file after every change so orders survive a restart.
"""

import json
from collections import deque
from pathlib import Path
from typing import Deque, Dict, Iterator, List, Optional, Set

import pydantic
from mcp.server.fastmcp.utilities.logging import get_logger

from continuum_relayer.models import Order, OrderStatus

logger = get_logger(__name__)


class ExecutionQueue:
    """FIFO of pending order ids. An id is never queued twice at once."""

    def __init__(self) -> None:
        self._ids: Deque[str] = deque()
        self._members: Set[str] = set()

    def push(self, order_id: str) -> None:
        if order_id in self._members:
            raise ValueError(f"Order {order_id} is already queued")
        self._ids.append(order_id)
        self._members.add(order_id)

    def pop(self) -> Optional[str]:
        """Removes and returns the head, or None when the queue is empty."""
        if not self._ids:
            return None
        order_id = self._ids.popleft()
        self._members.discard(order_id)
        return order_id

    def peek(self) -> Optional[str]:
        return self._ids[0] if self._ids else None

    def remove(self, order_id: str) -> bool:
        if order_id not in self._members:
            return False
        self._ids.remove(order_id)
        self._members.discard(order_id)
        return True

    def snapshot(self) -> List[str]:
        return list(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._members

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._ids))


class OrderStore:
    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        self._orders: Dict[str, Order] = {}
        self._last_sequence = 0

    def next_sequence(self) -> int:
        self._last_sequence += 1
        return self._last_sequence

    def add(self, order: Order) -> None:
        if order.order_id in self._orders:
            raise ValueError(f"Order {order.order_id} already exists")
        self._orders[order.order_id] = order
        self._last_sequence = max(self._last_sequence, order.sequence)

    def get(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def values(self) -> List[Order]:
        return sorted(self._orders.values(), key=lambda o: o.sequence)

    def pending_queued(self) -> List[Order]:
        """Pending orders that belong in the execution queue, in sequence order."""
        return [
            o for o in self.values()
            if o.status is OrderStatus.PENDING and o.execution_mode == "queued"
        ]

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._orders

    def __len__(self) -> int:
        return len(self._orders)

    # --- Persistence ---

    def load(self) -> None:
        """Loads orders from the JSON file, starting fresh if it is missing or unreadable."""
        if self.path is None:
            return
        if not self.path.exists():
            logger.info(f"Order store file {self.path} not found, starting fresh.")
            return
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
            orders = [Order.model_validate(o) for o in data.get("orders", [])]
        except (json.JSONDecodeError, OSError, TypeError, AttributeError, pydantic.ValidationError) as e:
            logger.error(f"Error loading order store from {self.path}: {e}. Starting fresh.")
            return
        self._orders = {o.order_id: o for o in orders}
        self._last_sequence = max([data.get("last_sequence", 0)] + [o.sequence for o in orders])
        logger.info(f"Loaded {len(orders)} orders from {self.path}")

    def save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            serializable = {
                "last_sequence": self._last_sequence,
                "orders": [o.model_dump(mode="json") for o in self.values()],
            }
            with open(self.path, 'w') as f:
                json.dump(serializable, f, indent=4)
            logger.debug(f"Saved {len(self._orders)} orders to {self.path}")
        except OSError as e:
            logger.exception(f"Error saving order store to {self.path}: {e}")
