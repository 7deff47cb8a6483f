"""Version registry: immutable deployable versions and their metadata."""

from __future__ import annotations

import datetime
import json
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import IntegrityError

from trafficshift.core.errors import ConflictError, DuplicateArtifactError, NotFoundError
from trafficshift.core.logging import get_logger
from trafficshift.db import repositories as repo
from trafficshift.db.models import VersionRecord
from trafficshift.db.session import session_scope

logger = get_logger(__name__)


@dataclass(frozen=True)
class Version:
    id: str
    artifact_ref: str
    created_at: datetime.datetime
    description: str | None = None
    tags: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, rec: VersionRecord) -> "Version":
        return cls(
            id=rec.id,
            artifact_ref=rec.artifact_ref,
            created_at=rec.created_at,
            description=rec.description,
            tags=json.loads(rec.tags) if rec.tags else {},
        )


class VersionRegistry:
    """Store of registered versions, backed by the ``versions`` table.

    Each call opens its own session, so concurrent readers on different
    threads never share ORM state.
    """

    def register(
        self,
        artifact_ref: str,
        description: str | None = None,
        tags: dict[str, Any] | None = None,
    ) -> Version:
        """Record a new version for *artifact_ref*.

        Raises ``DuplicateArtifactError`` if the artifact is already known.
        """
        with session_scope() as session:
            existing = repo.get_version_by_artifact(session, artifact_ref=artifact_ref)
            if existing is not None:
                logger.warning(
                    "version_already_registered",
                    artifact_ref=artifact_ref,
                    version_id=existing.id,
                )
                raise DuplicateArtifactError(artifact_ref, existing.id)

            try:
                rec = repo.create_version(
                    session,
                    artifact_ref=artifact_ref,
                    description=description,
                    tags=tags,
                )
            except IntegrityError:
                # Lost a race with a concurrent register of the same artifact
                session.rollback()
                winner = repo.get_version_by_artifact(session, artifact_ref=artifact_ref)
                raise DuplicateArtifactError(
                    artifact_ref, winner.id if winner else "unknown"
                ) from None
            logger.info(
                "version_registered", version_id=rec.id, artifact_ref=artifact_ref
            )
            return Version.from_record(rec)

    def get(self, version_id: str) -> Version:
        with session_scope() as session:
            rec = repo.get_version(session, version_id=version_id)
            if rec is None:
                raise NotFoundError(f"version {version_id} not found")
            return Version.from_record(rec)

    def exists(self, version_id: str) -> bool:
        with session_scope() as session:
            return repo.get_version(session, version_id=version_id) is not None

    def list_versions(self) -> list[Version]:
        with session_scope() as session:
            return [Version.from_record(r) for r in repo.list_versions(session)]

    def list_referenced(self, alias: str) -> list[Version]:
        """Versions that *alias* currently routes to or is shifting between."""
        with session_scope() as session:
            ids = {
                vid
                for vid, w in repo.get_alias_weights(session, alias_name=alias).items()
                if w > 0
            }
            for shift in repo.in_flight_shifts(session, alias_name=alias):
                ids.update((shift.from_version, shift.to_version))
            if not ids:
                return []
            return [
                Version.from_record(r)
                for r in repo.list_versions(session, version_ids=ids)
            ]

    def prune(self, version_id: str) -> None:
        """Delete a version that nothing references any more."""
        with session_scope() as session:
            if repo.get_version(session, version_id=version_id) is None:
                raise NotFoundError(f"version {version_id} not found")

            aliases = repo.aliases_referencing(session, version_id=version_id)
            if aliases:
                raise ConflictError(
                    f"version {version_id} is still routed by alias(es): "
                    + ", ".join(sorted(aliases))
                )
            for shift in repo.in_flight_shifts(session):
                if version_id in (shift.from_version, shift.to_version):
                    raise ConflictError(
                        f"version {version_id} is part of in-flight shift {shift.id}"
                    )

            repo.delete_version(session, version_id=version_id)
            logger.info("version_pruned", version_id=version_id)
