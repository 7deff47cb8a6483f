"""Operator-facing facade over registry, router and scheduler.

The API and CLI talk to a ``ShiftController``; nothing else in the process
holds alias state, so several controllers (e.g. one per test app) can live
side by side.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from trafficshift.core.config import Settings, get_settings
from trafficshift.core.errors import NotFoundError
from trafficshift.core.logging import get_logger
from trafficshift.db import repositories as repo
from trafficshift.db.models import ShiftRecord
from trafficshift.db.session import session_scope
from trafficshift.health.monitor import HealthMonitor
from trafficshift.health.sources import (
    InMemoryMetricSource,
    MetricSource,
    PrometheusMetricSource,
)
from trafficshift.hooks.executor import HookExecutor
from trafficshift.hooks.invokers import CompositeHookInvoker, HookInvoker
from trafficshift.registry.manager import Version, VersionRegistry
from trafficshift.routing.router import AliasRouter
from trafficshift.scheduler.plan import ShiftPlan
from trafficshift.scheduler.scheduler import ShiftScheduler, ShiftStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class AliasState:
    name: str
    weights: dict[str, float]
    active_plan: dict[str, Any] | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "weights": self.weights,
            "active_plan": self.active_plan,
        }


def _record_snapshot(rec: ShiftRecord) -> dict[str, Any]:
    data = json.loads(rec.plan)
    data.update(
        status=rec.status,
        reason=rec.reason,
        current_step=rec.current_step,
        created_at=str(rec.created_at),
        updated_at=str(rec.updated_at),
    )
    return data


class ShiftController:
    def __init__(
        self,
        registry: VersionRegistry,
        router: AliasRouter,
        scheduler: ShiftScheduler,
        metric_source: MetricSource | None = None,
        hook_invoker: HookInvoker | None = None,
    ) -> None:
        self.registry = registry
        self.router = router
        self.scheduler = scheduler
        self.metric_source = metric_source
        self.hook_invoker = hook_invoker

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        *,
        metric_source: MetricSource | None = None,
        hook_invoker: HookInvoker | None = None,
    ) -> "ShiftController":
        """Wire every component from *settings*.

        Without an explicit metric source, ``PROMETHEUS_URL`` selects the
        Prometheus adapter; otherwise an in-memory source is used.
        """
        settings = settings or get_settings()
        if metric_source is None:
            if settings.prometheus_url:
                metric_source = PrometheusMetricSource(settings.prometheus_url)
            else:
                metric_source = InMemoryMetricSource()
        hook_invoker = hook_invoker or CompositeHookInvoker()

        registry = VersionRegistry()
        router = AliasRouter(registry, epsilon=settings.weight_epsilon)
        monitor = HealthMonitor(metric_source, no_data_policy=settings.health_no_data_policy)
        hooks = HookExecutor(hook_invoker, timeout_seconds=settings.hook_timeout_seconds)
        scheduler = ShiftScheduler(
            router,
            monitor,
            hooks,
            poll_interval_seconds=settings.health_poll_interval_seconds,
        )
        return cls(registry, router, scheduler, metric_source, hook_invoker)

    # -------------------------------------------------------------------
    # Versions
    # -------------------------------------------------------------------

    def register_version(
        self,
        artifact_ref: str,
        description: str | None = None,
        tags: dict[str, Any] | None = None,
    ) -> Version:
        return self.registry.register(artifact_ref, description=description, tags=tags)

    def get_version(self, version_id: str) -> Version:
        return self.registry.get(version_id)

    def list_versions(self) -> list[Version]:
        return self.registry.list_versions()

    def prune_version(self, version_id: str) -> None:
        self.registry.prune(version_id)

    # -------------------------------------------------------------------
    # Aliases
    # -------------------------------------------------------------------

    def get_alias_state(self, name: str) -> AliasState:
        """Read-only snapshot of an alias for dashboards and CLIs."""
        weights = self.router.get_weights(name)
        run = self.scheduler.active_plan(name)
        return AliasState(
            name=name,
            weights=weights,
            active_plan=run.snapshot() if run is not None else None,
        )

    def list_aliases(self) -> list[AliasState]:
        return [self.get_alias_state(name) for name in self.router.list_aliases()]

    def set_weights(self, alias: str, weights: dict[str, float]) -> AliasState:
        """Operator override; rejected while a shift owns the alias."""
        with self.scheduler.idle_alias(alias):
            self.router.set_weights(alias, weights)
        logger.info("operator_override", alias=alias, weights=weights)
        return self.get_alias_state(alias)

    def commit(self, alias: str, version_id: str) -> AliasState:
        with self.scheduler.idle_alias(alias):
            self.router.commit(alias, version_id)
        logger.info("operator_commit", alias=alias, version_id=version_id)
        return self.get_alias_state(alias)

    def route(self, alias: str, request_fingerprint: str | None = None) -> str:
        return self.router.route(alias, request_fingerprint)

    # -------------------------------------------------------------------
    # Shifts
    # -------------------------------------------------------------------

    def start_shift(self, plan: ShiftPlan) -> dict[str, Any]:
        """Start *plan*; a plan id that already ran returns its state."""
        if not self.scheduler.has_run(plan.id):
            with session_scope() as session:
                rec = repo.get_shift(session, shift_id=plan.id)
            if rec is not None:
                return _record_snapshot(rec)
        return self.scheduler.start(plan).snapshot()

    def abort_shift(self, plan_id: str) -> dict[str, Any]:
        """Abort a running shift; repeated or late calls return current state."""
        if self.scheduler.has_run(plan_id):
            return self.scheduler.abort(plan_id).snapshot()
        return self.get_shift(plan_id)

    def get_shift(self, plan_id: str) -> dict[str, Any]:
        if self.scheduler.has_run(plan_id):
            return self.scheduler.get(plan_id).snapshot()
        with session_scope() as session:
            rec = repo.get_shift(session, shift_id=plan_id)
        if rec is None:
            raise NotFoundError(f"shift {plan_id} not found")
        return _record_snapshot(rec)

    def wait_for_shift(self, plan_id: str, timeout: float | None = None) -> dict[str, Any]:
        """Block until the shift is terminal (or *timeout*) and return it."""
        if self.scheduler.has_run(plan_id):
            self.scheduler.get(plan_id).wait(timeout)
        return self.get_shift(plan_id)

    def list_shifts(self, alias: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        with session_scope() as session:
            records = repo.list_shifts(session, alias_name=alias, limit=limit)
        snapshots = []
        for rec in records:
            if self.scheduler.has_run(rec.id):
                snapshots.append(self.scheduler.get(rec.id).snapshot())
            else:
                snapshots.append(_record_snapshot(rec))
        return snapshots

    def active_shifts(self) -> dict[str, str]:
        """``{alias: plan_id}`` for every non-terminal shift this process runs."""
        return {
            run.plan.alias: run.id
            for run in self.scheduler.list_runs()
            if not run.status.is_terminal
        }

    def recover_interrupted(self) -> list[str]:
        return self.scheduler.recover_interrupted()

    @staticmethod
    def is_terminal(snapshot: dict[str, Any]) -> bool:
        return ShiftStatus(snapshot["status"]).is_terminal
