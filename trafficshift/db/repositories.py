"""Data-access functions for all ORM models."""

from __future__ import annotations

import json
from typing import Any, Iterable

from sqlalchemy import desc
from sqlalchemy.orm import Session

from trafficshift.db.models import AliasWeight, ShiftRecord, VersionRecord

TERMINAL_STATUSES = ("succeeded", "rolled_back", "failed")


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------

def create_version(
    session: Session,
    *,
    artifact_ref: str,
    description: str | None = None,
    tags: dict[str, Any] | None = None,
) -> VersionRecord:
    """Insert a new version row."""
    rec = VersionRecord(
        artifact_ref=artifact_ref,
        description=description,
        tags=json.dumps(tags) if tags else None,
    )
    session.add(rec)
    session.commit()
    session.refresh(rec)
    return rec


def get_version(session: Session, *, version_id: str) -> VersionRecord | None:
    return session.query(VersionRecord).filter_by(id=version_id).first()


def get_version_by_artifact(
    session: Session, *, artifact_ref: str
) -> VersionRecord | None:
    return session.query(VersionRecord).filter_by(artifact_ref=artifact_ref).first()


def list_versions(
    session: Session, *, version_ids: Iterable[str] | None = None
) -> list[VersionRecord]:
    """List versions newest first, optionally restricted to *version_ids*."""
    q = session.query(VersionRecord).order_by(desc(VersionRecord.created_at))
    if version_ids is not None:
        q = q.filter(VersionRecord.id.in_(list(version_ids)))
    return list(q.all())


def delete_version(session: Session, *, version_id: str) -> bool:
    rec = get_version(session, version_id=version_id)
    if rec is None:
        return False
    session.delete(rec)
    session.commit()
    return True


# ---------------------------------------------------------------------------
# Alias weights
# ---------------------------------------------------------------------------

def replace_alias_weights(
    session: Session, *, alias_name: str, weights: dict[str, float]
) -> None:
    """Overwrite every weight row for *alias_name* in one transaction."""
    session.query(AliasWeight).filter_by(alias_name=alias_name).delete()
    for version_id, weight in weights.items():
        session.add(
            AliasWeight(alias_name=alias_name, version_id=version_id, weight=weight)
        )
    session.commit()


def get_alias_weights(session: Session, *, alias_name: str) -> dict[str, float]:
    rows = session.query(AliasWeight).filter_by(alias_name=alias_name).all()
    return {r.version_id: r.weight for r in rows}


def load_all_alias_weights(session: Session) -> dict[str, dict[str, float]]:
    """Return ``{alias: {version_id: weight}}`` for every persisted alias."""
    result: dict[str, dict[str, float]] = {}
    for r in session.query(AliasWeight).all():
        result.setdefault(r.alias_name, {})[r.version_id] = r.weight
    return result


def aliases_referencing(session: Session, *, version_id: str) -> list[str]:
    rows = (
        session.query(AliasWeight.alias_name)
        .filter(AliasWeight.version_id == version_id, AliasWeight.weight > 0)
        .distinct()
        .all()
    )
    return [r[0] for r in rows]


# ---------------------------------------------------------------------------
# Shifts
# ---------------------------------------------------------------------------

def create_shift(
    session: Session,
    *,
    shift_id: str,
    alias_name: str,
    from_version: str,
    to_version: str,
    plan: dict[str, Any],
) -> ShiftRecord:
    rec = ShiftRecord(
        id=shift_id,
        alias_name=alias_name,
        from_version=from_version,
        to_version=to_version,
        plan=json.dumps(plan),
    )
    session.add(rec)
    session.commit()
    session.refresh(rec)
    return rec


def update_shift(
    session: Session,
    *,
    shift_id: str,
    status: str | None = None,
    reason: str | None = None,
    current_step: int | None = None,
) -> ShiftRecord | None:
    rec = session.query(ShiftRecord).filter_by(id=shift_id).first()
    if rec is None:
        return None
    if status is not None:
        rec.status = status
    if reason is not None:
        rec.reason = reason
    if current_step is not None:
        rec.current_step = current_step
    session.commit()
    session.refresh(rec)
    return rec


def get_shift(session: Session, *, shift_id: str) -> ShiftRecord | None:
    return session.query(ShiftRecord).filter_by(id=shift_id).first()


def list_shifts(
    session: Session, *, alias_name: str | None = None, limit: int = 50
) -> list[ShiftRecord]:
    q = session.query(ShiftRecord).order_by(desc(ShiftRecord.created_at))
    if alias_name:
        q = q.filter_by(alias_name=alias_name)
    return list(q.limit(limit).all())


def in_flight_shifts(
    session: Session, *, alias_name: str | None = None
) -> list[ShiftRecord]:
    """Shifts that have not reached a terminal status."""
    q = session.query(ShiftRecord).filter(
        ShiftRecord.status.notin_(TERMINAL_STATUSES)
    )
    if alias_name:
        q = q.filter_by(alias_name=alias_name)
    return list(q.all())
