import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from backstage.config import Settings
from backstage.deps import get_db, get_settings
from backstage.errors import NotFound
from backstage.models import Event, EventUser, User

logger = logging.getLogger("backstage.auth")

ALG = "HS256"


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    STAFF = "STAFF"

    @property
    def rank(self) -> int:
        return {"ADMIN": 3, "MANAGER": 2, "STAFF": 1}[self.value]


def has_at_least(role: Optional[Role], threshold: Role) -> bool:
    if role is None:
        return False
    return role.rank >= threshold.rank


@dataclass(frozen=True)
class UserIdentity:
    id: int
    name: str
    email: str


def make_token(user_id: int, secret: str, exp_minutes: int = 60 * 24) -> str:
    payload = {
        "sub": str(user_id),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=exp_minutes),
    }
    return jwt.encode(payload, secret, algorithm=ALG)


def _raw_token(request: Request) -> Optional[str]:
    """
    Accepts token from:
    1) Authorization: Bearer <token>
    2) ?token=<token> (fallback for streaming clients)
    """
    header = request.headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        return header.split(" ", 1)[1].strip() or None
    return request.query_params.get("token") or None


def resolve_user(request: Request, db: Session, settings: Settings) -> Optional[UserIdentity]:
    raw = _raw_token(request)
    if not raw:
        return None
    try:
        data = jwt.decode(raw, settings.jwt_secret, algorithms=[ALG])
        user_id = int(data["sub"])
    except (JWTError, KeyError, ValueError):
        return None

    user = db.get(User, user_id)
    if user is None:
        logger.warning("Token for unknown user id %s", user_id)
        return None
    return UserIdentity(id=user.id, name=user.name, email=user.email)


def resolve_role(db: Session, user_id: int, event_id: str) -> Optional[Role]:
    row = (
        db.query(EventUser.role)
        .filter(EventUser.user_id == user_id, EventUser.event_id == event_id)
        .first()
    )
    if row is None:
        return None
    return Role(row[0])


def current_user(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> UserIdentity:
    user = resolve_user(request, db, settings)
    if user is None:
        raise HTTPException(401, "Unauthorized")
    return user


def require_event(
    db: Session, user: UserIdentity, event_id: str, threshold: Role = Role.STAFF
) -> Tuple[Event, Role]:
    role = resolve_role(db, user.id, event_id)
    if role is None:
        raise HTTPException(403, "Access denied")
    if not has_at_least(role, threshold):
        raise HTTPException(403, "Insufficient permissions")

    event = db.query(Event).filter(Event.id == event_id, Event.is_archived.is_(False)).first()
    if event is None:
        raise NotFound("Event not found")
    return event, role
