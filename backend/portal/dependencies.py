from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from portal.database import get_db
from portal.models.user import User


async def get_current_user(
    x_user_id: str | None = Header(None),
    db: Session = Depends(get_db),
) -> User:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user = db.get(User, x_user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


async def require_staff(user: User = Depends(get_current_user)) -> User:
    if not user.is_staff:
        raise HTTPException(status_code=403, detail="Staff access required")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_privileged:
        raise HTTPException(status_code=403, detail="Administrator access required")
    return user
