from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice import models
from backoffice.api.deps import get_current_user, record_audit
from backoffice.core.security import create_access_token_for_subject, verify_password
from backoffice.database import get_db
from backoffice.schemas import Token

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/token", response_model=Token)
def login_for_access_token(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),  # noqa: B008
    db: Session = Depends(get_db),  # noqa: B008
):
    try:
        user = db.query(models.User).filter(models.User.email == form_data.username).first()
    except SQLAlchemyError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable or not initialised. Please retry shortly.",
        )
    if not user or not verify_password(form_data.password, user.hashed_password):
        record_audit(db, request, None, "auth.login_failed", {"email": form_data.username})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect email or password"
        )
    if not user.active:
        record_audit(db, request, user, "auth.login_inactive", {"email": user.email})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")

    access_token = create_access_token_for_subject(subject=user.email)
    record_audit(db, request, user, "auth.login_success", {"email": user.email})
    return Token(access_token=access_token)


@router.get("/me")
def read_current_user(current_user: models.User = Depends(get_current_user)):  # noqa: B008
    return {
        "id": current_user.id,
        "email": current_user.email,
        "name": current_user.name,
        "role": current_user.role.name if current_user.role else None,
    }
