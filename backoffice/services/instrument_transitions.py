from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.orm import Session

from backoffice import models


@dataclass(frozen=True)
class TransitionResult:
    updated: bool
    rowcount: int


def atomic_transition_verification(
    *,
    db: Session,
    instrument_id: int,
    to_status: models.VerificationStatus,
    allowed_from: Iterable[models.VerificationStatus],
    updates: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Apply a verification-status transition with an atomic DB guard.

    A single conditional UPDATE keeps out-of-order transitions from being persisted
    under concurrency:

        UPDATE funding_instruments
        SET verification_status = :to_status, ...
        WHERE id = :instrument_id AND verification_status IN (:allowed_from)

    Callers control commit/rollback.
    """

    if now is None:
        now = datetime.utcnow()

    update_values: dict[str, Any] = {"verification_status": to_status, "updated_at": now}
    if updates:
        update_values.update(updates)

    rowcount = (
        db.query(models.FundingInstrument)
        .filter(models.FundingInstrument.id == int(instrument_id))
        .filter(models.FundingInstrument.verification_status.in_(set(allowed_from)))
        .update(update_values, synchronize_session=False)
    )

    return TransitionResult(updated=rowcount > 0, rowcount=int(rowcount or 0))


def atomic_transition_stage(
    *,
    db: Session,
    instrument_id: int,
    to_stage: models.InstrumentStage,
    from_stage: models.InstrumentStage,
    now: datetime | None = None,
) -> TransitionResult:
    """Issuance-lifecycle counterpart of :func:`atomic_transition_verification`."""

    if now is None:
        now = datetime.utcnow()

    rowcount = (
        db.query(models.FundingInstrument)
        .filter(models.FundingInstrument.id == int(instrument_id))
        .filter(models.FundingInstrument.stage == from_stage)
        .update({"stage": to_stage, "updated_at": now}, synchronize_session=False)
    )

    return TransitionResult(updated=rowcount > 0, rowcount=int(rowcount or 0))
