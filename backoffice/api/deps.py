from typing import Any, Callable, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.core.security import decode_access_token_subject
from backoffice.database import get_db
from backoffice.models import RoleName, User
from backoffice.services.audit import audit_event


def _token_url() -> str:
    if settings.api_prefix:
        prefix = settings.api_prefix.rstrip("/")
        return f"{prefix}/auth/token"
    return "/auth/token"


oauth2_scheme = OAuth2PasswordBearer(tokenUrl=_token_url())
oauth2_optional = OAuth2PasswordBearer(tokenUrl=_token_url(), auto_error=False)

_DB_DEP = Depends(get_db)
_TOKEN_OPT_DEP = Depends(oauth2_optional)


def get_current_user(
    db: Session = _DB_DEP,
    token: Optional[str] = _TOKEN_OPT_DEP,
) -> User:
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    subject = decode_access_token_subject(token)
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    user = db.query(User).filter(User.email == subject, User.active.is_(True)).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    return user


def get_current_user_optional(
    db: Session = _DB_DEP,
    token: Optional[str] = _TOKEN_OPT_DEP,
) -> Optional[User]:
    if not token:
        return None
    try:
        return get_current_user(db=db, token=token)
    except HTTPException:
        return None


_CURRENT_USER_OPT_DEP = Depends(get_current_user_optional)


def _role_value(user: Any) -> str:
    user_role = getattr(getattr(user, "role", None), "name", None)
    # user.role.name is an Enum in our models; normalize to string.
    if isinstance(user_role, RoleName):
        return user_role.value
    return str(user_role) if user_role is not None else ""


def require_roles(*roles: RoleName) -> Callable:
    _CURRENT_USER_DEP = Depends(get_current_user)

    def dependency(user: User = _CURRENT_USER_DEP) -> User:
        if roles:
            user_role_value = _role_value(user)

            # Admin has access to everything
            if user_role_value == RoleName.admin.value:
                return user

            allowed = {r.value if isinstance(r, RoleName) else str(r) for r in roles}
            if user_role_value not in allowed:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role"
                )
        return user

    return dependency


_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}

# Compute-only POST endpoints (no persistence). Auditors may call these while
# remaining globally read-only for everything else.
_AUDITOR_SAFE_POST_PATH_SUFFIXES = {
    "/funding/structure/preview",
}


def enforce_auditor_readonly(
    request: Request,
    user: Optional[User] = _CURRENT_USER_OPT_DEP,
) -> None:
    """Auditors are globally read-only.

    Enforced at the request boundary so that a route that accidentally lists the
    auditor role still refuses writes.
    """

    if not user or not getattr(user, "role", None):
        return
    if _role_value(user) != RoleName.auditor.value:
        return

    method = request.method.upper()
    if method in _SAFE_METHODS:
        return

    if method == "POST":
        path = str(getattr(request.url, "path", "") or "")
        if any(path.endswith(suffix) for suffix in _AUDITOR_SAFE_POST_PATH_SUFFIXES):
            return

    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Auditor is read-only")


def actor_name(user: Any) -> str:
    """Stable actor string for ``performed_by`` / ``resolved_by`` style columns."""

    return str(getattr(user, "email", None) or getattr(user, "name", None) or f"user:{getattr(user, 'id', '?')}")


def record_audit(
    db: Session,
    request: Request,
    user: Any,
    action: str,
    payload: dict[str, Any],
    *,
    deal_id: Optional[int] = None,
) -> Optional[int]:
    """Write an AuditLog row for a completed request action and commit it."""

    audit_id = audit_event(
        action,
        getattr(user, "id", None),
        payload,
        db=db,
        deal_id=deal_id,
        request_id=getattr(request.state, "request_id", None) or request.headers.get("x-request-id"),
        ip=(request.client.host if request.client else None),
        user_agent=request.headers.get("user-agent"),
    )
    db.commit()
    return audit_id
