from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice import models


@dataclass(frozen=True)
class YearlyNumber:
    doc_type: str
    period: str  # YYYY
    seq: int
    formatted: str


def _utc_now() -> datetime:
    return datetime.utcnow()


def format_yearly_number(*, prefix: str, seq: int, now: datetime) -> str:
    """Format: PREFIX-2026-0001 (sequence resets each year, `seq` is 1-based)."""

    return f"{prefix}-{now.strftime('%Y')}-{seq:04d}"


def next_yearly_number(
    db: Session,
    *,
    doc_type: str,
    prefix: str,
    now: datetime | None = None,
    max_retries: int = 5,
) -> YearlyNumber:
    now = now or _utc_now()
    period = now.strftime("%Y")

    dialect_name = getattr(getattr(db, "bind", None), "dialect", None)
    dialect_name = getattr(dialect_name, "name", None)

    for _ in range(max_retries):
        q = db.query(models.DocumentSequence).filter(
            models.DocumentSequence.doc_type == str(doc_type),
            models.DocumentSequence.period == str(period),
        )

        # SQLite doesn't support FOR UPDATE; other DBs benefit from row locking.
        if dialect_name and str(dialect_name).lower() not in {"sqlite"}:
            q = q.with_for_update()

        row = q.first()

        if row is None:
            row = models.DocumentSequence(doc_type=str(doc_type), period=str(period), last_seq=0)
            db.add(row)
            try:
                db.flush()
            except IntegrityError:
                # Another request created the row first. Callers allocate before any other write.
                db.rollback()
                continue

        row.last_seq = int(row.last_seq or 0) + 1
        db.add(row)
        db.flush()

        seq = int(row.last_seq)
        return YearlyNumber(
            doc_type=str(doc_type),
            period=str(period),
            seq=seq,
            formatted=format_yearly_number(prefix=str(prefix), seq=seq, now=now),
        )

    raise RuntimeError(f"Could not allocate number for doc_type={doc_type} period={period}")
