"""Thread-safe registry of trade models, one exclusive lock per trade."""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from .errors import ProtocolViolation, TradeNotFound
from .trade_model import TradeModel, TradeState

logger = logging.getLogger(__name__)


class TradeModelHandle:
    """
    A trade model together with its exclusive-access lock.

    Callers hold the guard for exactly one protocol operation and must never
    hold it across network I/O:

        with handle.lock() as trade_model:
            trade_model.init_my_nonce_shares()
    """

    def __init__(self, trade_model: TradeModel):
        self._trade_model = trade_model
        self._lock = threading.Lock()

    @property
    def trade_id(self) -> str:
        return self._trade_model.trade_id

    @contextmanager
    def lock(self) -> Iterator[TradeModel]:
        with self._lock:
            yield self._trade_model

    def is_settled_before(self, cutoff: float) -> bool:
        # Unguarded read of two fields written once under the trade lock
        model = self._trade_model
        return model.state is TradeState.SETTLED and model.settled_at is not None and model.settled_at <= cutoff


class TradeModelStore:
    """
    Concurrent mapping from trade id to trade model handle.

    The store lock only guards the mapping itself and is never held while a
    trade lock is taken, so at most one lock is held at any time.
    """

    def __init__(self, settled_trade_retention_seconds: Optional[float] = None):
        self._lock = threading.Lock()
        self._handles: dict[str, TradeModelHandle] = {}
        self.settled_trade_retention_seconds = settled_trade_retention_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def __contains__(self, trade_id: str) -> bool:
        with self._lock:
            return trade_id in self._handles

    def add_trade_model(self, trade_model: TradeModel) -> TradeModelHandle:
        handle = TradeModelHandle(trade_model)
        with self._lock:
            if trade_model.trade_id in self._handles:
                raise ProtocolViolation(f"trade {trade_model.trade_id} already exists")
            self._handles[trade_model.trade_id] = handle
        logger.info(f"Registered trade {trade_model.trade_id} as {trade_model.my_role.value}")
        return handle

    def get_trade_model(self, trade_id: str) -> TradeModelHandle:
        with self._lock:
            handle = self._handles.get(trade_id)
        if handle is None:
            raise TradeNotFound(f"trade {trade_id} not found")
        return handle

    def remove_trade_model(self, trade_id: str) -> None:
        with self._lock:
            if self._handles.pop(trade_id, None) is None:
                raise TradeNotFound(f"trade {trade_id} not found")

    def evict_settled(self, now: Optional[float] = None) -> list[str]:
        """
        Drop settled trades whose retention period has passed.

        Unsettled trades are never evicted: they hold the key shares that
        control the deposited funds.
        """
        if self.settled_trade_retention_seconds is None:
            return []
        cutoff = (time.monotonic() if now is None else now) - self.settled_trade_retention_seconds
        with self._lock:
            expired = [trade_id for trade_id, handle in self._handles.items() if handle.is_settled_before(cutoff)]
            for trade_id in expired:
                del self._handles[trade_id]
        if expired:
            logger.info(f"Evicted {len(expired)} settled trades: {', '.join(expired)}")
        return expired
