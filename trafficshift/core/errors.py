"""Error taxonomy shared by every component.

``ValidationError`` and its subclasses are raised before any state is
mutated.  ``HookTimeoutError`` and ``ExternalCollaboratorError`` are raised
by collaborator adapters and are converted into policy outcomes by the
health monitor and hook executor; they never escape a running shift.
"""

from __future__ import annotations


class TrafficShiftError(Exception):
    """Base class for all domain errors."""


class ValidationError(TrafficShiftError):
    """Malformed plan, weights or request."""


class InvalidWeightsError(ValidationError):
    """Weight map does not sum to 1.0 or references unknown versions."""


class EmptyPlanError(ValidationError):
    """A shift plan was created without any steps."""


class NotFoundError(TrafficShiftError):
    """Requested version, alias or shift does not exist."""


class DuplicateArtifactError(TrafficShiftError):
    """The artifact has already been registered as a version."""

    def __init__(self, artifact_ref: str, version_id: str) -> None:
        super().__init__(
            f"artifact '{artifact_ref}' already registered as version {version_id}"
        )
        self.artifact_ref = artifact_ref
        self.version_id = version_id


class ConflictError(TrafficShiftError):
    """Operation collides with an active shift or a live reference."""


class HookTimeoutError(TrafficShiftError, TimeoutError):
    """A hook or health check did not answer within its timeout."""


class ExternalCollaboratorError(TrafficShiftError):
    """Metric source or hook endpoint was unreachable or answered garbage."""


class HookAbortedError(TrafficShiftError):
    """The shift was aborted while waiting on a hook."""
