"""Shift scheduler: drives a plan through its state machine.

::

    pending -> pre_hook_running -(fail)-> failed
                     |
                  shifting -(alarm / abort)-> rolled_back
                     |
             post_hook_running -(fail)-> rolled_back
                     |
                 succeeded

Each accepted plan runs on its own daemon thread.  The run loop never lets
an exception escape: every run ends in a terminal status with a reason.
Rollback is always a commit of 100 % to the from-version.
"""

from __future__ import annotations

import enum
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from trafficshift.core.config import get_settings
from trafficshift.core.errors import ConflictError, NotFoundError, ValidationError
from trafficshift.core.logging import bind_shift_context, get_logger
from trafficshift.core.metrics import ACTIVE_SHIFTS, SHIFT_DURATION, SHIFT_TRANSITIONS
from trafficshift.db import repositories as repo
from trafficshift.db.session import session_scope
from trafficshift.health.monitor import HealthMonitor
from trafficshift.hooks.executor import HookExecutor
from trafficshift.routing.router import AliasRouter
from trafficshift.scheduler.plan import ShiftPlan

logger = get_logger(__name__)

ABORT_REASON = "aborted by operator"
_MIN_POLL_SECONDS = 0.01


class ShiftStatus(str, enum.Enum):
    PENDING = "pending"
    PRE_HOOK_RUNNING = "pre_hook_running"
    SHIFTING = "shifting"
    POST_HOOK_RUNNING = "post_hook_running"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ShiftStatus.SUCCEEDED, ShiftStatus.ROLLED_BACK, ShiftStatus.FAILED)


@dataclass
class ShiftRun:
    """Runtime state of one plan: status, cursor and terminal reason."""

    plan: ShiftPlan
    status: ShiftStatus = ShiftStatus.PENDING
    reason: str | None = None
    current_step: int = -1
    weights_touched: bool = False
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    _abort: threading.Event = field(default_factory=threading.Event, repr=False)
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def id(self) -> str:
        return self.plan.id

    @property
    def abort_requested(self) -> bool:
        return self._abort.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the run is terminal.  Returns False on timeout."""
        return self._done.wait(timeout)

    def snapshot(self) -> dict[str, Any]:
        data = self.plan.to_dict()
        data.update(
            status=self.status.value,
            reason=self.reason,
            current_step=self.current_step,
            abort_requested=self.abort_requested,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )
        return data


class ShiftScheduler:
    def __init__(
        self,
        router: AliasRouter,
        monitor: HealthMonitor,
        hooks: HookExecutor,
        *,
        poll_interval_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._router = router
        self._monitor = monitor
        self._hooks = hooks
        self._poll_interval = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else get_settings().health_poll_interval_seconds
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._runs: dict[str, ShiftRun] = {}
        self._active: dict[str, str] = {}
        self._overriding: set[str] = set()

    # -------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------

    def start(self, plan: ShiftPlan) -> ShiftRun:
        """Accept *plan* and start running it on a new thread.

        Re-submitting a plan id that is already known returns its run.
        A second plan for an alias with an active shift, in this or any
        other process sharing the database, raises ``ConflictError``.
        """
        with self._lock:
            existing = self._runs.get(plan.id)
            if existing is not None:
                return existing

            self._ensure_idle(plan.alias)
            self._validate_against_state(plan)

            run = ShiftRun(plan=plan)
            with session_scope() as session:
                repo.create_shift(
                    session,
                    shift_id=plan.id,
                    alias_name=plan.alias,
                    from_version=plan.from_version,
                    to_version=plan.to_version,
                    plan=plan.to_dict(),
                )
            self._runs[plan.id] = run
            self._active[plan.alias] = plan.id

        ACTIVE_SHIFTS.inc()
        SHIFT_TRANSITIONS.labels(alias=plan.alias, status=run.status.value).inc()
        logger.info(
            "shift_accepted",
            plan_id=plan.id,
            alias=plan.alias,
            from_version=plan.from_version,
            to_version=plan.to_version,
            steps=len(plan.steps),
        )
        thread = threading.Thread(
            target=self._execute, args=(run,), name=f"shift-{plan.id[:8]}", daemon=True
        )
        thread.start()
        return run

    def abort(self, plan_id: str) -> ShiftRun:
        """Request an abort; a terminal run is returned unchanged."""
        run = self.get(plan_id)
        if run.status.is_terminal:
            return run
        if not run.abort_requested:
            run._abort.set()
            logger.info("shift_abort_requested", plan_id=plan_id, alias=run.plan.alias)
        return run

    def get(self, plan_id: str) -> ShiftRun:
        run = self._runs.get(plan_id)
        if run is None:
            raise NotFoundError(f"shift {plan_id} not found")
        return run

    def has_run(self, plan_id: str) -> bool:
        return plan_id in self._runs

    def list_runs(self, alias: str | None = None) -> list[ShiftRun]:
        runs = list(self._runs.values())
        if alias:
            runs = [r for r in runs if r.plan.alias == alias]
        return sorted(runs, key=lambda r: r.started_at, reverse=True)

    def active_plan(self, alias: str) -> ShiftRun | None:
        plan_id = self._active.get(alias)
        return self._runs.get(plan_id) if plan_id else None

    @contextmanager
    def idle_alias(self, alias: str) -> Iterator[None]:
        """Hold off new shifts on *alias* while an operator override runs.

        Only the check and the reservation happen under the scheduler lock;
        the override itself runs outside it.
        """
        with self._lock:
            self._ensure_idle(alias)
            self._overriding.add(alias)
        try:
            yield
        finally:
            with self._lock:
                self._overriding.discard(alias)

    def _ensure_idle(self, alias: str) -> None:
        """Raise ``ConflictError`` if *alias* is busy here or in another process.

        Caller holds ``self._lock``.
        """
        active_id = self._active.get(alias)
        if active_id is not None:
            raise ConflictError(f"alias '{alias}' already has an active shift {active_id}")
        if alias in self._overriding:
            raise ConflictError(f"alias '{alias}' is being overridden by an operator")
        with session_scope() as session:
            foreign = [
                rec.id
                for rec in repo.in_flight_shifts(session, alias_name=alias)
                if rec.id not in self._runs
            ]
        if foreign:
            raise ConflictError(
                f"alias '{alias}' has an in-flight shift {foreign[0]} owned by another "
                "process; abort it there or run recovery if that process is gone"
            )

    def _validate_against_state(self, plan: ShiftPlan) -> None:
        for version_id in (plan.from_version, plan.to_version):
            if not self._router.registry.exists(version_id):
                raise ValidationError(f"version {version_id} is not registered")
        if not self._router.has_alias(plan.alias):
            raise ValidationError(
                f"alias '{plan.alias}' does not exist; commit it to "
                f"{plan.from_version} first"
            )
        weights = self._router.get_weights(plan.alias)
        if weights != {plan.from_version: 1.0}:
            raise ValidationError(
                f"alias '{plan.alias}' must route 100% to {plan.from_version} "
                f"before shifting (current weights: {weights})"
            )

    # -------------------------------------------------------------------
    # Run loop
    # -------------------------------------------------------------------

    def _execute(self, run: ShiftRun) -> None:
        plan = run.plan
        bind_shift_context(plan.id, plan.alias)
        try:
            self._drive(run)
        except Exception as exc:
            logger.exception("shift_internal_error", plan_id=plan.id)
            if run.weights_touched:
                self._rollback(run, f"rolled back due to internal error: {exc!r}")
            else:
                self._finish(run, ShiftStatus.FAILED, f"failed due to internal error: {exc!r}")
        finally:
            with self._lock:
                if self._active.get(plan.alias) == plan.id:
                    del self._active[plan.alias]
            ACTIVE_SHIFTS.dec()
            run._done.set()

    def _drive(self, run: ShiftRun) -> None:
        plan = run.plan

        self._transition(run, ShiftStatus.PRE_HOOK_RUNNING)
        pre = self._hooks.run_pre(plan, abort=run._abort)
        if run.abort_requested:
            # Nothing was shifted yet, the alias is still on from_version
            self._finish(run, ShiftStatus.ROLLED_BACK, ABORT_REASON)
            return
        if not pre.passed:
            self._finish(run, ShiftStatus.FAILED, f"pre-traffic hook failed: {pre.detail}")
            return

        self._transition(run, ShiftStatus.SHIFTING)
        for idx, step in enumerate(plan.steps):
            if run.abort_requested:
                self._rollback(run, ABORT_REASON)
                return

            run.current_step = idx
            self._persist(run)
            weights = self._step_weights(plan, step.fraction)
            run.weights_touched = True
            self._router.set_weights(plan.alias, weights)
            logger.info(
                "shift_step",
                step=idx,
                fraction=step.fraction,
                hold_seconds=step.hold_seconds,
            )

            interruption = self._hold(run, step.hold_seconds)
            if interruption is not None:
                self._rollback(run, interruption)
                return

        self._transition(run, ShiftStatus.POST_HOOK_RUNNING)
        post = self._hooks.run_post(plan, abort=run._abort)
        if run.abort_requested:
            self._rollback(run, ABORT_REASON)
            return
        if not post.passed:
            self._rollback(
                run, f"rolled back due to post-hook failure: {post.detail}"
            )
            return

        self._router.commit(plan.alias, plan.to_version)
        self._finish(
            run,
            ShiftStatus.SUCCEEDED,
            f"shifted 100% of '{plan.alias}' to {plan.to_version}",
        )

    def _hold(self, run: ShiftRun, hold_seconds: float) -> str | None:
        """Dwell on the current weights, polling alarms and the abort flag.

        Returns a rollback reason, or ``None`` when the hold ran out cleanly.
        """
        if hold_seconds <= 0:
            return None

        plan = run.plan
        interval = max(min(self._poll_interval, hold_seconds / 10.0), _MIN_POLL_SECONDS)
        labels = {
            "alias": plan.alias,
            "version": plan.to_version,
            "from_version": plan.from_version,
        }
        deadline = self._clock() + hold_seconds
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return None
            if run._abort.wait(min(interval, remaining)):
                return ABORT_REASON
            if plan.alarms:
                verdict = self._monitor.evaluate_all(list(plan.alarms), labels=labels)
                if verdict is not None:
                    return f"rolled back due to alarm {verdict.signal} breach: {verdict.reason}"

    @staticmethod
    def _step_weights(plan: ShiftPlan, fraction: float) -> dict[str, float]:
        weights = {plan.from_version: 1.0 - fraction, plan.to_version: fraction}
        return {vid: w for vid, w in weights.items() if w > 0.0}

    def _rollback(self, run: ShiftRun, reason: str) -> None:
        plan = run.plan
        try:
            self._router.commit(plan.alias, plan.from_version)
        except Exception as exc:
            logger.exception("shift_rollback_commit_failed", plan_id=plan.id)
            self._finish(
                run,
                ShiftStatus.FAILED,
                f"{reason}; rollback to {plan.from_version} failed: {exc!r}",
            )
            return
        self._finish(run, ShiftStatus.ROLLED_BACK, reason)

    # -------------------------------------------------------------------
    # Status bookkeeping
    # -------------------------------------------------------------------

    def _transition(self, run: ShiftRun, status: ShiftStatus) -> None:
        run.status = status
        SHIFT_TRANSITIONS.labels(alias=run.plan.alias, status=status.value).inc()
        logger.info("shift_transition", status=status.value, step=run.current_step)
        self._persist(run)

    def _finish(self, run: ShiftRun, status: ShiftStatus, reason: str) -> None:
        run.reason = reason
        run.finished_at = time.time()
        self._transition(run, status)
        SHIFT_DURATION.labels(alias=run.plan.alias, status=status.value).observe(
            run.finished_at - run.started_at
        )
        log = logger.info if status is ShiftStatus.SUCCEEDED else logger.warning
        log("shift_finished", status=status.value, reason=reason)

    def _persist(self, run: ShiftRun) -> None:
        """Write status to the audit table.  Audit failures do not stop a run."""
        try:
            with session_scope() as session:
                repo.update_shift(
                    session,
                    shift_id=run.id,
                    status=run.status.value,
                    reason=run.reason,
                    current_step=run.current_step,
                )
        except Exception:
            logger.exception("shift_persist_failed", plan_id=run.id)

    # -------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------

    def recover_interrupted(self) -> list[str]:
        """Close out shifts left non-terminal by a previous process.

        The alias is committed back to the from-version and the record is
        marked rolled back.  Only call this when no other process is
        running shifts against the same database.
        """
        recovered: list[str] = []
        with session_scope() as session:
            orphans = [
                rec
                for rec in repo.in_flight_shifts(session)
                if rec.id not in self._runs
            ]
        for rec in orphans:
            if self._router.has_alias(rec.alias_name):
                self._router.commit(rec.alias_name, rec.from_version)
            with session_scope() as session:
                repo.update_shift(
                    session,
                    shift_id=rec.id,
                    status=ShiftStatus.ROLLED_BACK.value,
                    reason="rolled back: shift was interrupted by a restart",
                )
            logger.warning("shift_recovered", plan_id=rec.id, alias=rec.alias_name)
            recovered.append(rec.id)
        return recovered
