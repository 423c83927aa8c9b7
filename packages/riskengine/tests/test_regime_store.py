"""
Unit tests for the regime model store.

Tests cover:
- Staleness and retrain cadence
- Single training run under concurrent retrains
- Snapshot kept when training fails
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from riskengine.risk.errors import InsufficientDataError
from riskengine.risk.models import REGIME_STATES, HmmModel
from riskengine.services.regime_store import RegimeModelStore

T0 = datetime(2024, 6, 3, tzinfo=timezone.utc)


def _model(trained_at):
    return HmmModel(
        state_names=list(REGIME_STATES),
        transition_matrix=[[0.25] * 4 for _ in range(4)],
        initial_distribution=[0.25] * 4,
        state_means=[0.001, -0.001, 0.0, 0.0],
        state_stdevs=[0.01, 0.02, 0.03, 0.01],
        log_likelihood=0.0,
        iterations=1,
        converged=True,
        observations=100,
        trained_at=trained_at,
    )


class TestRegimeModelStore:
    """Tests for RegimeModelStore."""

    def test_empty_store_is_stale(self):
        store = RegimeModelStore()

        assert store.current() is None
        assert store.is_stale(T0)
        assert store.version == 0

    def test_staleness_follows_interval(self):
        store = RegimeModelStore(retrain_interval=timedelta(days=30), model=_model(T0))

        assert not store.is_stale(T0 + timedelta(days=29))
        assert store.is_stale(T0 + timedelta(days=30))

    def test_fresh_model_not_retrained(self):
        store = RegimeModelStore(model=_model(T0))
        calls = []

        result = store.retrain(lambda: calls.append(1) or _model(T0), now=T0 + timedelta(days=1))

        assert calls == []
        assert result is store.current()

    def test_force_retrains(self):
        store = RegimeModelStore(model=_model(T0))
        newer = _model(T0 + timedelta(days=1))

        result = store.retrain(lambda: newer, now=T0 + timedelta(days=1), force=True)

        assert result is newer
        assert store.current() is newer
        assert store.version == 2

    def test_failed_training_keeps_snapshot(self):
        original = _model(T0)
        store = RegimeModelStore(model=original)

        def broken():
            raise InsufficientDataError("not enough data")

        with pytest.raises(InsufficientDataError):
            store.retrain(broken, now=T0 + timedelta(days=60))

        assert store.current() is original

    def test_concurrent_retrains_train_once(self):
        store = RegimeModelStore(model=_model(T0))
        now = T0 + timedelta(days=45)
        calls = []
        lock = threading.Lock()

        def train():
            with lock:
                calls.append(1)
            time.sleep(0.05)
            return _model(now)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: store.retrain(train, now=now), range(4)))

        assert len(calls) == 1
        assert all(r is results[0] for r in results)

    def test_readers_see_whole_snapshots(self):
        store = RegimeModelStore(model=_model(T0))
        newer = _model(T0 + timedelta(days=31))
        seen = []

        def reader():
            for _ in range(200):
                seen.append(store.current().trained_at)

        thread = threading.Thread(target=reader)
        thread.start()
        store.swap(newer)
        thread.join()

        assert set(seen) <= {T0, newer.trained_at}
        assert store.current() is newer
