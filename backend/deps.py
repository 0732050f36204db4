# backend/deps.py — Request identity + role guards

import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, HTTPException, Header
from sqlalchemy.orm import Session

from models import get_db, User, UserRole

logger = logging.getLogger(__name__)


def get_current_user(
    x_user_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    if not x_user_email:
        raise HTTPException(401, "Authentication required.")

    user = db.query(User).filter(User.email == x_user_email.strip().lower()).first()
    if not user:
        raise HTTPException(401, "Unknown user.")
    if not user.is_active:
        raise HTTPException(403, "Account is deactivated.")

    user.last_login_at = datetime.utcnow()
    db.commit()
    return user


def require_role(*roles: UserRole):
    allowed = [r.value for r in roles]

    def checker(user: User = Depends(get_current_user)) -> User:
        if user.role.value not in allowed:
            logger.warning("User %s (%s) denied, needs %s", user.email, user.role.value, allowed)
            raise HTTPException(403, f"Access denied. Required role: {' or '.join(allowed)}")
        return user

    return checker


require_admin = require_role(UserRole.admin)
require_manager = require_role(UserRole.admin, UserRole.manager)
