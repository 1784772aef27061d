"""Tests for the trade model registry and its per-trade locking."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from musig_trade.protocol import (
    ProtocolViolation,
    TradeModel,
    TradeModelStore,
    TradeNotFound,
    TradeRole,
    TradeState,
)
from musig_trade.protocol import musig2


def add_trade(store: TradeModelStore, trade_id: str, role: TradeRole = TradeRole.BUYER):
    model = TradeModel(trade_id, role)
    model.init_my_key_shares()
    return store.add_trade_model(model)


def test_add_and_get():
    store = TradeModelStore()
    handle = add_trade(store, "trade-1")
    assert store.get_trade_model("trade-1") is handle
    assert "trade-1" in store
    assert len(store) == 1
    with handle.lock() as model:
        assert model.trade_id == "trade-1"


def test_duplicate_trade_id_is_rejected():
    store = TradeModelStore()
    add_trade(store, "trade-1")
    with pytest.raises(ProtocolViolation):
        add_trade(store, "trade-1", TradeRole.SELLER)
    with store.get_trade_model("trade-1").lock() as model:
        assert model.my_role is TradeRole.BUYER


def test_unknown_trade_id():
    store = TradeModelStore()
    with pytest.raises(TradeNotFound):
        store.get_trade_model("missing")
    with pytest.raises(TradeNotFound):
        store.remove_trade_model("missing")


def test_remove_trade():
    store = TradeModelStore()
    add_trade(store, "trade-1")
    store.remove_trade_model("trade-1")
    assert "trade-1" not in store


def test_different_trades_do_not_block_each_other():
    store = TradeModelStore()
    first, second = add_trade(store, "trade-1"), add_trade(store, "trade-2")
    entered, release = threading.Event(), threading.Event()

    def hold_first():
        with first.lock():
            entered.set()
            release.wait(timeout=5)

    holder = threading.Thread(target=hold_first)
    holder.start()
    try:
        assert entered.wait(timeout=5)
        # Neither the store nor the other trade is blocked while trade-1 is held
        assert store.get_trade_model("trade-2") is second
        with second.lock() as model:
            assert model.trade_id == "trade-2"
        add_trade(store, "trade-3")
    finally:
        release.set()
        holder.join(timeout=5)


def test_operations_on_one_trade_are_serialized():
    store = TradeModelStore()
    handle = add_trade(store, "trade-1")
    active = []
    overlaps = []
    guard = threading.Lock()

    def operation():
        with handle.lock():
            with guard:
                active.append(1)
                if len(active) > 1:
                    overlaps.append(len(active))
            time.sleep(0.001)
            with guard:
                active.pop()

    with ThreadPoolExecutor(max_workers=8) as pool:
        for future in [pool.submit(operation) for _ in range(50)]:
            future.result()
    assert overlaps == []


def test_concurrent_set_once_has_exactly_one_winner():
    store = TradeModelStore()
    handle = add_trade(store, "trade-1")
    peers = [(musig2.generate_key_share(), musig2.generate_key_share()) for _ in range(8)]
    barrier = threading.Barrier(len(peers))

    def set_peer_key_shares(peer):
        barrier.wait(timeout=5)
        with handle.lock() as model:
            model.set_peer_key_shares(peer[0].pub_key, peer[1].pub_key)

    with ThreadPoolExecutor(max_workers=len(peers)) as pool:
        futures = [pool.submit(set_peer_key_shares, peer) for peer in peers]
    outcomes = [future.exception() for future in futures]
    assert sum(outcome is None for outcome in outcomes) == 1
    assert all(isinstance(outcome, ProtocolViolation) for outcome in outcomes if outcome is not None)


def test_evict_settled_only_drops_expired_settled_trades():
    store = TradeModelStore(settled_trade_retention_seconds=60)
    settled = add_trade(store, "settled")
    recent = add_trade(store, "recent")
    add_trade(store, "open")

    with settled.lock() as model:
        model.state = TradeState.SETTLED
        model.settled_at = 1_000.0
    with recent.lock() as model:
        model.state = TradeState.SETTLED
        model.settled_at = 1_050.0

    assert store.evict_settled(now=1_100.0) == ["settled"]
    assert "settled" not in store
    assert "recent" in store and "open" in store
    assert store.evict_settled(now=1_110.0) == ["recent"]
    assert store.evict_settled(now=1_000_000.0) == []
    assert "open" in store


def test_eviction_disabled_without_retention():
    store = TradeModelStore()
    handle = add_trade(store, "settled")
    with handle.lock() as model:
        model.state = TradeState.SETTLED
        model.settled_at = 0.0
    assert store.evict_settled(now=1e9) == []
    assert "settled" in store
