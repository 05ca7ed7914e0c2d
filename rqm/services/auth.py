# rqm/services/auth.py
import base64
import hmac
import os
from dataclasses import dataclass
from hashlib import pbkdf2_hmac
from typing import Optional, Tuple

from fastapi import Request
from sqlalchemy.orm import Session

from rqm.config import settings as app_settings
from rqm.models.user import User
from rqm.services.errors import Unauthorized

# Session Keys
SESSION_USER_ID = "user_id"
SESSION_ROLE = "role"


@dataclass(frozen=True)
class SessionUser:
    user_id: int
    role: str


# ---------- Passwort-Hashing (PBKDF2) ----------
# Format: pbkdf2$<iterationen>$<salt b64>$<hash b64>
PasswordParts = Tuple[int, bytes, bytes]


def _derive(plain: str, salt: bytes, iterations: int) -> bytes:
    return pbkdf2_hmac("sha256", plain.encode("utf-8"), salt, iterations)


def _split_hash(stored: Optional[str]) -> Optional[PasswordParts]:
    """Zerlegt einen gespeicherten Hash; None bei fremdem Schema oder kaputtem Wert."""
    parts = (stored or "").split("$")
    if len(parts) != 4 or parts[0] != app_settings.PASSWORD_SCHEME:
        return None
    try:
        iterations = int(parts[1])
        salt = base64.b64decode(parts[2], validate=True)
        digest = base64.b64decode(parts[3], validate=True)
    except ValueError:  # binascii.Error eingeschlossen
        return None
    if iterations <= 0 or not salt or not digest:
        return None
    return iterations, salt, digest


def hash_password(plain: str, *, iterations: Optional[int] = None, salt: Optional[bytes] = None) -> str:
    rounds = iterations or app_settings.PASSWORD_ITERATIONS
    salt = salt or os.urandom(16)
    encoded = [base64.b64encode(x).decode("ascii") for x in (salt, _derive(plain, salt, rounds))]
    return "$".join([app_settings.PASSWORD_SCHEME, str(rounds), *encoded])


def verify_password(plain: str, stored: Optional[str]) -> bool:
    parts = _split_hash(stored)
    if parts is None:
        return False
    iterations, salt, expected = parts
    return hmac.compare_digest(_derive(plain, salt, iterations), expected)


# ---------- Auth-Helpers ----------
def authenticate_user(db: Session, username: str, password: str) -> Optional[User]:
    user = db.query(User).filter(User.username == username, User.is_active == True).first()  # noqa: E712
    if not user:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user

def login_user(request: Request, user: User) -> None:
    request.session[SESSION_USER_ID] = user.id
    request.session[SESSION_ROLE] = user.role

def logout_user(request: Request) -> None:
    request.session.pop(SESSION_USER_ID, None)
    request.session.pop(SESSION_ROLE, None)

def session_user(request: Request) -> Optional[SessionUser]:
    uid = request.session.get(SESSION_USER_ID)
    role = request.session.get(SESSION_ROLE)
    if not uid or not role:
        return None
    return SessionUser(user_id=int(uid), role=role)

def has_role(actor: Optional[SessionUser], *roles: str) -> bool:
    return actor is not None and actor.role in roles

def require_role(actor: Optional[SessionUser], *roles: str) -> SessionUser:
    """Fuer mutierende Aktionen: falsche Rolle -> Unauthorized."""
    if not has_role(actor, *roles):
        raise Unauthorized()
    return actor
