"""Pre/post traffic hook execution with a bounded wait.

Hooks are correctness gates and fail closed: a timeout, an exception from
the invoker or any status other than ``succeeded`` is a failed hook.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from trafficshift.core.config import get_settings
from trafficshift.core.errors import HookAbortedError, HookTimeoutError
from trafficshift.core.logging import get_logger
from trafficshift.core.metrics import HOOK_DURATION, HOOK_RESULTS
from trafficshift.hooks.invokers import HookInvoker, HookResponse, HookStatus

if TYPE_CHECKING:
    from trafficshift.scheduler.plan import ShiftPlan

logger = get_logger(__name__)

PRE_TRAFFIC = "pre_traffic"
POST_TRAFFIC = "post_traffic"


@dataclass(frozen=True)
class HookResult:
    phase: str
    passed: bool
    detail: str
    hook_ref: str | None = None
    timed_out: bool = False
    aborted: bool = False
    skipped: bool = False
    duration_s: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "passed": self.passed,
            "detail": self.detail,
            "hook_ref": self.hook_ref,
            "timed_out": self.timed_out,
            "aborted": self.aborted,
            "skipped": self.skipped,
            "duration_s": round(self.duration_s, 3),
        }


class HookExecutor:
    def __init__(
        self,
        invoker: HookInvoker,
        timeout_seconds: float | None = None,
        *,
        abort_check_seconds: float = 0.05,
    ) -> None:
        self._invoker = invoker
        self._timeout = (
            timeout_seconds
            if timeout_seconds is not None
            else get_settings().hook_timeout_seconds
        )
        self._abort_check = abort_check_seconds

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def run_pre(
        self, plan: "ShiftPlan", abort: threading.Event | None = None
    ) -> HookResult:
        return self._run(PRE_TRAFFIC, plan.hooks.pre, plan, abort)

    def run_post(
        self, plan: "ShiftPlan", abort: threading.Event | None = None
    ) -> HookResult:
        return self._run(POST_TRAFFIC, plan.hooks.post, plan, abort)

    def _run(
        self,
        phase: str,
        hook_ref: str | None,
        plan: "ShiftPlan",
        abort: threading.Event | None = None,
    ) -> HookResult:
        """Invoke *hook_ref*.  Setting *abort* abandons the wait early."""
        if not hook_ref:
            HOOK_RESULTS.labels(phase=phase, outcome="skipped").inc()
            return HookResult(phase=phase, passed=True, detail="no hook configured", skipped=True)

        payload = {
            "plan_id": plan.id,
            "alias": plan.alias,
            "from_version": plan.from_version,
            "to_version": plan.to_version,
            "phase": phase,
        }
        logger.info("hook_invoking", phase=phase, hook_ref=hook_ref, timeout_s=self._timeout)

        start = time.perf_counter()
        try:
            response = self._invoke_with_timeout(hook_ref, payload, abort)
        except HookAbortedError as exc:
            result = HookResult(
                phase=phase,
                passed=False,
                detail=str(exc),
                hook_ref=hook_ref,
                aborted=True,
                duration_s=time.perf_counter() - start,
            )
        except HookTimeoutError as exc:
            result = HookResult(
                phase=phase,
                passed=False,
                detail=str(exc),
                hook_ref=hook_ref,
                timed_out=True,
                duration_s=time.perf_counter() - start,
            )
        except Exception as exc:
            logger.exception("hook_invoke_failed", phase=phase, hook_ref=hook_ref)
            result = HookResult(
                phase=phase,
                passed=False,
                detail=f"hook raised {exc!r}",
                hook_ref=hook_ref,
                duration_s=time.perf_counter() - start,
            )
        else:
            passed = response.status is HookStatus.SUCCEEDED
            result = HookResult(
                phase=phase,
                passed=passed,
                detail=response.detail or response.status.value,
                hook_ref=hook_ref,
                duration_s=time.perf_counter() - start,
            )

        HOOK_DURATION.labels(phase=phase).observe(result.duration_s)
        if result.aborted:
            outcome = "aborted"
        elif result.timed_out:
            outcome = "timeout"
        else:
            outcome = "passed" if result.passed else "failed"
        HOOK_RESULTS.labels(phase=phase, outcome=outcome).inc()
        logger.info(
            "hook_result",
            phase=phase,
            hook_ref=hook_ref,
            outcome=outcome,
            detail=result.detail,
            duration_s=round(result.duration_s, 3),
        )
        return result

    def _invoke_with_timeout(
        self,
        hook_ref: str,
        payload: dict[str, Any],
        abort: threading.Event | None = None,
    ) -> HookResponse:
        """Run the invoker on a daemon thread and wait at most the timeout.

        A hook that never answers, or whose shift is aborted, leaves its
        thread behind; the shift does not wait for it.
        """
        outcome: dict[str, Any] = {}
        done = threading.Event()

        def _target() -> None:
            try:
                outcome["response"] = self._invoker.invoke(hook_ref, payload)
            except BaseException as exc:  # re-raised on the caller's thread
                outcome["error"] = exc
            finally:
                done.set()

        worker = threading.Thread(
            target=_target, name=f"hook-{payload['phase']}-{payload['plan_id'][:8]}", daemon=True
        )
        worker.start()
        deadline = time.monotonic() + self._timeout
        while not done.is_set():
            if abort is not None and abort.is_set():
                raise HookAbortedError(f"hook {hook_ref} abandoned: shift aborted")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HookTimeoutError(
                    f"hook {hook_ref} timed out after {self._timeout:g}s"
                )
            done.wait(min(self._abort_check, remaining))
        if "error" in outcome:
            raise outcome["error"]
        response = outcome["response"]
        if not isinstance(response, HookResponse):
            raise TypeError(f"invoker returned {type(response).__name__}")
        return response
