"""Hook invocation adapters.

An invoker delivers a payload to the hook named by ``hook_ref`` and returns
an explicit ``HookResponse``.  Anything other than ``succeeded`` counts as a
failure.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import httpx

from trafficshift.core.errors import ExternalCollaboratorError, NotFoundError
from trafficshift.core.logging import get_logger

logger = get_logger(__name__)


class HookStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class HookResponse:
    status: HookStatus
    detail: str = ""


class HookInvoker(Protocol):
    def invoke(self, hook_ref: str, payload: dict[str, Any]) -> HookResponse:
        ...


HookCallable = Callable[[dict[str, Any]], "HookResponse | bool"]


class CallableHookInvoker:
    """Dispatches to Python callables registered under a name.

    A callable may return a ``HookResponse`` or a plain bool.
    """

    def __init__(self) -> None:
        self._hooks: dict[str, HookCallable] = {}
        self._lock = threading.Lock()

    def register(self, hook_ref: str, fn: HookCallable) -> None:
        with self._lock:
            self._hooks[hook_ref] = fn

    def invoke(self, hook_ref: str, payload: dict[str, Any]) -> HookResponse:
        with self._lock:
            fn = self._hooks.get(hook_ref)
        if fn is None:
            raise NotFoundError(f"hook '{hook_ref}' is not registered")

        result = fn(payload)
        if isinstance(result, HookResponse):
            return result
        if isinstance(result, bool):
            return HookResponse(
                status=HookStatus.SUCCEEDED if result else HookStatus.FAILED
            )
        raise ExternalCollaboratorError(
            f"hook '{hook_ref}' returned {type(result).__name__}, expected a status"
        )


class HttpHookInvoker:
    """POSTs the payload as JSON to ``hook_ref`` (a URL).

    The endpoint must answer 2xx with ``{"status": "succeeded"|"failed",
    "detail": "..."}``.
    """

    def __init__(
        self,
        timeout: float = 300.0,
        headers: dict[str, str] | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._client = client or httpx.Client(timeout=timeout, headers=headers)

    def invoke(self, hook_ref: str, payload: dict[str, Any]) -> HookResponse:
        try:
            resp = self._client.post(hook_ref, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.TimeoutException as exc:
            raise ExternalCollaboratorError(f"hook {hook_ref} timed out: {exc}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalCollaboratorError(f"hook {hook_ref} failed: {exc}") from exc

        try:
            status = HookStatus(str(body.get("status", "")).lower())
        except (AttributeError, ValueError):
            raise ExternalCollaboratorError(
                f"hook {hook_ref} answered without a valid status: {body!r}"
            ) from None
        return HookResponse(status=status, detail=str(body.get("detail", "")))

    def close(self) -> None:
        self._client.close()


class CompositeHookInvoker:
    """Routes ``http(s)://`` refs to HTTP and everything else to callables."""

    def __init__(
        self,
        callables: CallableHookInvoker | None = None,
        http: HttpHookInvoker | None = None,
    ) -> None:
        self.callables = callables or CallableHookInvoker()
        self._http = http

    def invoke(self, hook_ref: str, payload: dict[str, Any]) -> HookResponse:
        if hook_ref.startswith(("http://", "https://")):
            if self._http is None:
                self._http = HttpHookInvoker()
            return self._http.invoke(hook_ref, payload)
        return self.callables.invoke(hook_ref, payload)
