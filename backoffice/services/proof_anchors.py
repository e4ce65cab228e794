from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice import models
from backoffice.core.errors import ConflictError, ValidationError
from backoffice.services.deal_intake import get_deal

logger = logging.getLogger("backoffice")

ANCHOR_CHAINS = ("XRPL", "STELLAR")


def _canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def object_hash(data: Any) -> str:
    """SHA-256 of the canonical JSON form; key order does not change the hash."""

    return _sha256_hex(_canonical_json(data))


def _find(db: Session, object_type: str, object_id: str, digest: str, chain: str) -> Optional[models.ProofAnchor]:
    return (
        db.query(models.ProofAnchor)
        .filter(
            models.ProofAnchor.object_type == object_type,
            models.ProofAnchor.object_id == object_id,
            models.ProofAnchor.object_hash == digest,
            models.ProofAnchor.anchor_chain == chain,
        )
        .first()
    )


def anchor_proof(
    db: Session,
    *,
    object_type: str,
    object_id: str,
    object_data: Any,
    created_by: str,
    deal_id: Optional[int] = None,
    chains: Optional[Iterable[str]] = None,
) -> list[models.ProofAnchor]:
    """Record PENDING anchors for an object's hash, one per chain.

    Anchoring the same content twice returns the existing rows. Nothing is
    submitted to a ledger.
    """

    object_type = (object_type or "").strip().upper()
    object_id = str(object_id or "").strip()
    if not object_type or not object_id:
        raise ValidationError("object_type and object_id are required", code="ANCHOR_FIELDS_REQUIRED")
    if object_data in (None, "", {}, []):
        raise ValidationError("object_data is required", code="ANCHOR_FIELDS_REQUIRED")

    wanted = [str(c).strip().upper() for c in (chains or ["XRPL"])]
    unknown = [c for c in wanted if c not in ANCHOR_CHAINS]
    if unknown or not wanted:
        raise ValidationError(
            "Unsupported anchor chain", code="INVALID_ANCHOR_CHAIN", details={"chains": unknown or wanted}
        )
    if deal_id is not None:
        get_deal(db, deal_id)

    digest = object_hash(object_data)
    anchors: list[models.ProofAnchor] = []
    for chain in dict.fromkeys(wanted):
        existing = _find(db, object_type, object_id, digest, chain)
        if existing is not None:
            anchors.append(existing)
            continue
        row = models.ProofAnchor(
            deal_id=deal_id,
            object_type=object_type,
            object_id=object_id,
            object_hash=digest,
            anchor_chain=chain,
            status=models.AnchorStatus.PENDING,
            created_by=created_by,
        )
        db.add(row)
        anchors.append(row)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(
            "An identical anchor was recorded concurrently",
            code="ANCHOR_CONFLICT",
            details={"object_type": object_type, "object_id": object_id},
        )
    for a in anchors:
        db.refresh(a)

    logger.info(
        "proof_anchor_recorded",
        extra={"object_type": object_type, "object_id": object_id, "object_hash": digest, "chains": wanted},
    )
    return anchors


def list_anchors(
    db: Session, *, deal_id: Optional[int] = None, object_id: Optional[str] = None
) -> list[models.ProofAnchor]:
    if deal_id is None and not object_id:
        raise ValidationError("deal_id or object_id is required", code="ANCHOR_FILTER_REQUIRED")
    q = db.query(models.ProofAnchor)
    if deal_id is not None:
        q = q.filter(models.ProofAnchor.deal_id == deal_id)
    if object_id:
        q = q.filter(models.ProofAnchor.object_id == str(object_id))
    return q.order_by(models.ProofAnchor.created_at.desc(), models.ProofAnchor.id.desc()).all()
