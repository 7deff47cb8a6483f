"""Alias router: weighted traffic split between versions behind a stable name."""

from __future__ import annotations

import bisect
import hashlib
import math
import random
import threading
import time
from dataclasses import dataclass

from trafficshift.core.config import get_settings
from trafficshift.core.errors import InvalidWeightsError, NotFoundError
from trafficshift.core.logging import get_logger
from trafficshift.core.metrics import ALIAS_WEIGHT, ROUTE_COUNT
from trafficshift.db import repositories as repo
from trafficshift.db.session import session_scope
from trafficshift.registry.manager import VersionRegistry

logger = get_logger(__name__)

_HASH_SPACE = float(2**64)


@dataclass(frozen=True)
class RoutingTable:
    """Immutable cumulative-weight table for one alias.

    ``cumulative[i]`` is the upper bound of version ``version_ids[i]``'s
    slice of [0, 1).  Lookups are a single ``bisect``.
    """

    version_ids: tuple[str, ...]
    cumulative: tuple[float, ...]
    weights: dict[str, float]

    @classmethod
    def build(cls, weights: dict[str, float]) -> "RoutingTable":
        ordered = sorted(weights.items())
        ids: list[str] = []
        bounds: list[float] = []
        running = 0.0
        for version_id, weight in ordered:
            running += weight
            ids.append(version_id)
            bounds.append(running)
        # Absorb float drift so u close to 1.0 still lands on the last slice
        bounds[-1] = 1.0
        return cls(tuple(ids), tuple(bounds), dict(ordered))

    def pick(self, point: float) -> str:
        idx = bisect.bisect_right(self.cumulative, point)
        return self.version_ids[min(idx, len(self.version_ids) - 1)]


def _fingerprint_point(alias: str, fingerprint: str) -> float:
    """Map a request fingerprint to a stable point in [0, 1)."""
    digest = hashlib.sha256(f"{alias}:{fingerprint}".encode()).digest()
    return int.from_bytes(digest[:8], "big") / _HASH_SPACE


class AliasRouter:
    """Owns the weight table of every alias.

    Writers take a lock scoped to one alias only, so shifts on unrelated
    aliases never contend.  Each write swaps in a new ``RoutingTable`` so
    ``route`` always sees a complete table without locking, except when its
    table is due for a reload.

    ``alias_weights`` is the source of truth shared with other processes
    (the CLI, a second API worker).  Writes go through to it and reads
    reload from it: ``get_weights`` and ``set_weights`` always, ``route``
    once its table is older than ``refresh_seconds``.
    """

    def __init__(
        self,
        registry: VersionRegistry,
        *,
        epsilon: float | None = None,
        rng: random.Random | None = None,
        refresh_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        self._registry = registry
        self._epsilon = epsilon if epsilon is not None else settings.weight_epsilon
        self._refresh_seconds = (
            refresh_seconds if refresh_seconds is not None else settings.alias_refresh_seconds
        )
        self._rng = rng or random.Random()
        self._tables: dict[str, RoutingTable] = {}
        self._synced_at: dict[str, float] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._load()

    def _load(self) -> None:
        with session_scope() as session:
            persisted = repo.load_all_alias_weights(session)
        for alias, weights in persisted.items():
            if weights:
                with self._lock_for(alias):
                    self._install(alias, weights)
        if persisted:
            logger.info("aliases_loaded", count=len(persisted))

    def _lock_for(self, alias: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(alias)
            if lock is None:
                lock = self._locks[alias] = threading.Lock()
            return lock

    def _install(self, alias: str, weights: dict[str, float]) -> RoutingTable:
        """Swap in a table for *weights*.  Caller holds the alias lock."""
        self._synced_at[alias] = time.monotonic()
        previous = self._tables.get(alias)
        if previous is not None and previous.weights == weights:
            return previous
        table = RoutingTable.build(weights)
        self._tables[alias] = table
        self._publish_gauges(alias, previous.weights if previous else {}, table.weights)
        return table

    def _reload(self, alias: str) -> RoutingTable | None:
        """Re-read *alias* from the database.  Caller holds the alias lock."""
        with session_scope() as session:
            persisted = repo.get_alias_weights(session, alias_name=alias)
        if not persisted:
            return self._tables.get(alias)
        previous = self._tables.get(alias)
        table = self._install(alias, persisted)
        if previous is not None and table is not previous:
            logger.info("alias_weights_reloaded", alias=alias, weights=persisted)
        return table

    def _current(self, alias: str, max_age: float = 0.0) -> RoutingTable | None:
        table = self._tables.get(alias)
        if table is not None and max_age > 0:
            if time.monotonic() - self._synced_at.get(alias, 0.0) < max_age:
                return table
        with self._lock_for(alias):
            return self._reload(alias)

    @property
    def registry(self) -> VersionRegistry:
        return self._registry

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def has_alias(self, alias: str) -> bool:
        return self._current(alias, max_age=self._refresh_seconds) is not None

    def list_aliases(self) -> list[str]:
        self._load()
        return sorted(self._tables)

    def get_weights(self, alias: str) -> dict[str, float]:
        table = self._current(alias)
        if table is None:
            raise NotFoundError(f"alias '{alias}' not found")
        return dict(table.weights)

    def route(self, alias: str, request_fingerprint: str | None = None) -> str:
        """Pick the version that serves a request on *alias*.

        The same fingerprint always maps to the same version for a given
        weight table; without one the choice is random.
        """
        table = self._current(alias, max_age=self._refresh_seconds)
        if table is None:
            raise NotFoundError(f"alias '{alias}' not found")

        if request_fingerprint is None:
            point = self._rng.random()
        else:
            point = _fingerprint_point(alias, request_fingerprint)

        version_id = table.pick(point)
        ROUTE_COUNT.labels(alias=alias, version=version_id).inc()
        return version_id

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------

    def validate_weights(self, weights: dict[str, float]) -> dict[str, float]:
        """Return *weights* with zero entries dropped, or raise."""
        if not weights:
            raise InvalidWeightsError("weight map is empty")

        cleaned: dict[str, float] = {}
        for version_id, weight in weights.items():
            weight = float(weight)
            if not math.isfinite(weight) or weight < 0.0:
                raise InvalidWeightsError(
                    f"weight for {version_id} must be a finite non-negative number"
                )
            if weight > 0.0:
                cleaned[version_id] = weight

        total = math.fsum(weights.values())
        if abs(total - 1.0) > self._epsilon:
            raise InvalidWeightsError(f"weights sum to {total!r}, expected 1.0")

        unknown = [vid for vid in cleaned if not self._registry.exists(vid)]
        if unknown:
            raise InvalidWeightsError(
                "weights reference unknown version(s): " + ", ".join(sorted(unknown))
            )
        return cleaned

    def set_weights(self, alias: str, weights: dict[str, float]) -> dict[str, float]:
        """Replace the traffic split of *alias* (creating it if needed)."""
        cleaned = self.validate_weights(weights)

        with self._lock_for(alias):
            previous = self._reload(alias)
            if previous is not None and previous.weights == cleaned:
                logger.debug("alias_weights_unchanged", alias=alias)
                return dict(previous.weights)

            with session_scope() as session:
                repo.replace_alias_weights(session, alias_name=alias, weights=cleaned)
            table = self._install(alias, cleaned)

        logger.info("alias_weights_set", alias=alias, weights=cleaned)
        return dict(table.weights)

    def commit(self, alias: str, version_id: str) -> dict[str, float]:
        """Atomically route 100 % of *alias* to *version_id*."""
        weights = self.set_weights(alias, {version_id: 1.0})
        logger.info("alias_committed", alias=alias, version_id=version_id)
        return weights

    @staticmethod
    def _publish_gauges(
        alias: str, old: dict[str, float], new: dict[str, float]
    ) -> None:
        for version_id in old.keys() - new.keys():
            ALIAS_WEIGHT.labels(alias=alias, version=version_id).set(0.0)
        for version_id, weight in new.items():
            ALIAS_WEIGHT.labels(alias=alias, version=version_id).set(weight)
