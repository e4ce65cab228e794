from __future__ import annotations

# ruff: noqa: B008
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from backoffice import models
from backoffice.api.deps import actor_name, record_audit, require_roles
from backoffice.database import get_db
from backoffice.schemas import ProofAnchorCreate, ProofAnchorRead
from backoffice.services.proof_anchors import anchor_proof, list_anchors

router = APIRouter(prefix="/funding/anchors", tags=["anchors"])

_anchors_read_roles_dep = require_roles(
    models.RoleName.operations,
    models.RoleName.finance,
    models.RoleName.compliance,
    models.RoleName.auditor,
)
_anchors_write_roles_dep = require_roles(
    models.RoleName.operations,
    models.RoleName.finance,
    models.RoleName.compliance,
)


@router.get("", response_model=list[ProofAnchorRead])
def list_anchors_endpoint(
    deal_id: Optional[int] = Query(None),
    object_id: Optional[str] = Query(None, max_length=64),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_anchors_read_roles_dep),
):
    return list_anchors(db, deal_id=deal_id, object_id=object_id)


@router.post("", response_model=list[ProofAnchorRead], status_code=status.HTTP_201_CREATED)
def create_anchor_endpoint(
    payload: ProofAnchorCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_anchors_write_roles_dep),
):
    anchors = anchor_proof(
        db,
        object_type=payload.object_type,
        object_id=payload.object_id,
        object_data=payload.object_data,
        created_by=actor_name(current_user),
        deal_id=payload.deal_id,
        chains=payload.chains,
    )
    record_audit(
        db,
        request,
        current_user,
        "proof.anchored",
        {
            "object_type": anchors[0].object_type,
            "object_id": anchors[0].object_id,
            "object_hash": anchors[0].object_hash,
            "chains": [a.anchor_chain for a in anchors],
        },
        deal_id=payload.deal_id,
    )
    return anchors
