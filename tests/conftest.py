"""Shared test fixtures."""

from __future__ import annotations

import time
from typing import Callable

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from trafficshift.db.models import Base
from trafficshift.db.session import init_db
from trafficshift.health.monitor import HealthMonitor
from trafficshift.health.signals import DataPoint
from trafficshift.health.sources import InMemoryMetricSource
from trafficshift.hooks.executor import HookExecutor
from trafficshift.hooks.invokers import CompositeHookInvoker
from trafficshift.registry.manager import VersionRegistry
from trafficshift.routing.router import AliasRouter
from trafficshift.scheduler.controller import ShiftController
from trafficshift.scheduler.scheduler import ShiftScheduler


@pytest.fixture()
def db_session() -> Session:
    """In-memory SQLite session with tables created."""
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    session = factory()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture(autouse=True)
def _set_env_for_tests(tmp_path, monkeypatch):
    """Point DATABASE_URL to a temporary SQLite and keep timers short."""
    db_path = str(tmp_path / "test.db")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("HOOK_TIMEOUT_SECONDS", "2")
    monkeypatch.setenv("HEALTH_POLL_INTERVAL_SECONDS", "0.01")
    monkeypatch.delenv("PROMETHEUS_URL", raising=False)
    monkeypatch.delenv("HEALTH_NO_DATA_POLICY", raising=False)

    # Reset the singleton engine so each test gets a fresh one
    from trafficshift.db import session as sess_mod
    sess_mod.reset_engine()
    yield
    sess_mod.reset_engine()


class WeightTriggeredSource:
    """Metric source that reports ``bad`` while *version* holds *fraction*.

    Ties a breach to a specific plan step without depending on timing.
    """

    def __init__(self, version: str, fraction: float, bad: float = 1.0, good: float = 0.0):
        self.version = version
        self.fraction = fraction
        self.bad = bad
        self.good = good
        self.alias = "live"
        self.router: AliasRouter | None = None

    def sample(self, metric_name: str, window_seconds: float) -> list[DataPoint]:
        weight = 0.0
        if self.router is not None and self.router.has_alias(self.alias):
            weight = self.router.get_weights(self.alias).get(self.version, 0.0)
        value = self.bad if abs(weight - self.fraction) < 1e-9 else self.good
        return [DataPoint(timestamp=time.time(), value=value)]


@pytest.fixture()
def make_controller() -> Callable[..., ShiftController]:
    """Factory for a fully wired controller with short timers."""

    def _make(
        metric_source=None,
        hook_invoker=None,
        hook_timeout: float = 2.0,
        poll_interval: float = 0.01,
        no_data_policy: str = "fail_open",
    ) -> ShiftController:
        init_db()
        source = metric_source if metric_source is not None else InMemoryMetricSource()
        invoker = hook_invoker if hook_invoker is not None else CompositeHookInvoker()
        registry = VersionRegistry()
        router = AliasRouter(registry)
        scheduler = ShiftScheduler(
            router,
            HealthMonitor(source, no_data_policy=no_data_policy),
            HookExecutor(invoker, timeout_seconds=hook_timeout),
            poll_interval_seconds=poll_interval,
        )
        if isinstance(source, WeightTriggeredSource):
            source.router = router
        return ShiftController(registry, router, scheduler, source, invoker)

    return _make


@pytest.fixture()
def controller(make_controller) -> ShiftController:
    return make_controller()


@pytest.fixture()
def versions(controller) -> tuple[str, str]:
    """Two registered versions with alias ``live`` fully on the first."""
    v1 = controller.register_version("s3://builds/app-1.0.0.zip", description="baseline")
    v2 = controller.register_version("s3://builds/app-1.1.0.zip", description="candidate")
    controller.commit("live", v1.id)
    return v1.id, v2.id


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()
