"""Holder for the shared HMM regime model.

The model itself is an immutable snapshot. Readers take the current
reference without locking; retrains are serialized by a writer lock and the
new snapshot replaces the old one in a single reference assignment.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from ..risk.models import HmmModel

logger = structlog.get_logger(__name__)


class RegimeModelStore:
    """Single-writer, many-reader store for the current HmmModel."""

    def __init__(self, retrain_interval: timedelta = timedelta(days=30), model: Optional[HmmModel] = None):
        self._model = model
        self._retrain_interval = retrain_interval
        self._write_lock = threading.Lock()
        self._version = 0 if model is None else 1

    @property
    def retrain_interval(self) -> timedelta:
        return self._retrain_interval

    @property
    def version(self) -> int:
        return self._version

    def current(self) -> Optional[HmmModel]:
        """The latest snapshot, or None before the first training."""
        return self._model

    def is_stale(self, now: datetime) -> bool:
        model = self._model
        if model is None:
            return True
        return now - model.trained_at >= self._retrain_interval

    def swap(self, model: HmmModel) -> HmmModel:
        """Install a new snapshot and return it."""
        with self._write_lock:
            self._install(model)
        return model

    def retrain(
        self,
        train: Callable[[], HmmModel],
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> HmmModel:
        """Retrain under the writer lock unless another writer already did.

        The staleness check is repeated after acquiring the lock so that
        callers racing on a stale model trigger a single training run. If
        ``train`` raises, the previous snapshot stays in place.

        Args:
            train: Zero-argument callable producing a new snapshot
            now: Reference time for the staleness check (required unless force)
            force: Retrain even if the current snapshot is fresh
        """
        with self._write_lock:
            current = self._model
            if not force and current is not None and now is not None and not self.is_stale(now):
                return current

            model = train()
            self._install(model)
            return model

    def _install(self, model: HmmModel) -> None:
        previous = self._model
        self._model = model
        self._version += 1
        logger.info(
            "regime_model_store: model swapped",
            version=self._version,
            trained_at=model.trained_at.isoformat(),
            previous_trained_at=previous.trained_at.isoformat() if previous else None,
        )
