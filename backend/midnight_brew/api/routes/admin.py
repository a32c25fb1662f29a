import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from midnight_brew.api.deps import get_db_session, require_admin
from midnight_brew.core.sessions import cleanup_expired_sessions, revoke_all_user_sessions
from midnight_brew.models.auth_session import AuthSession
from midnight_brew.models.user import User, UserRole
from midnight_brew.schemas.auth import RoleUpdateRequest, UserOut

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger("mb.auth")


@router.get("/users")
def list_users(
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> List[Dict[str, Any]]:
    """Users with their active session counts, newest first."""
    counts = dict(
        db.query(AuthSession.user_id, func.count(AuthSession.id))
        .filter(AuthSession.is_active.is_(True))
        .group_by(AuthSession.user_id)
        .all()
    )
    users = db.query(User).order_by(User.created_at.desc(), User.id.desc()).limit(500).all()
    out = []
    for u in users:
        item = UserOut.model_validate(u).model_dump(mode="json")
        item["active_sessions"] = int(counts.get(u.id, 0))
        out.append(item)
    return out


@router.patch("/users/{user_id}/role")
def update_role(
    user_id: int,
    body: RoleUpdateRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_admin),
) -> Dict[str, Any]:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.id == current_user.id and body.role != UserRole.admin:
        raise HTTPException(status_code=400, detail="You cannot remove your own admin role")

    user.role = body.role
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("role_updated user_id=%s role=%s by=%s", user.id, user.role.value, current_user.id)
    return UserOut.model_validate(user).model_dump(mode="json")


@router.post("/users/{user_id}/sessions/revoke")
def revoke_user_sessions(
    user_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_admin),
) -> Dict[str, Any]:
    """Force logout on every device of one user."""
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    outcome = revoke_all_user_sessions(db, user.id)
    if not outcome.ok:
        raise HTTPException(status_code=503, detail="Service temporarily unavailable")
    logger.warning("sessions_revoked_by_admin user_id=%s by=%s count=%s", user.id, current_user.id, outcome.revoked)
    return {"ok": True, "revoked": outcome.revoked}


@router.post("/sessions/cleanup")
def cleanup_sessions(
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> Dict[str, int]:
    """Run one janitor pass now instead of waiting for the next interval."""
    return {"deleted": cleanup_expired_sessions(db)}
