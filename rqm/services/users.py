# rqm/services/users.py
from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rqm.models.user import User, ROLE_ADMIN, ROLE_KOMITE, ROLE_SANTRI, ROLE_GURU, VALID_ROLES
from rqm.services.auth import SessionUser, hash_password, require_role
from rqm.services.errors import InvalidUser, commit, guarded

logger = logging.getLogger(__name__)


def list_students(db: Session, actor: Optional[SessionUser]) -> List[dict]:
    require_role(actor, ROLE_ADMIN, ROLE_KOMITE)
    students = db.query(User).filter(User.role == ROLE_SANTRI).order_by(User.name.asc()).all()
    hide = actor.role == ROLE_KOMITE
    return [{"id": s.id, "name": s.name, "username": None if hide else s.username} for s in students]


def list_gurus(db: Session) -> List[dict]:
    gurus = db.query(User).filter(User.role == ROLE_GURU).order_by(User.name.asc()).all()
    return [{"id": g.id, "name": g.name, "username": g.username} for g in gurus]


def users_by_role(db: Session, actor: Optional[SessionUser], role: str) -> List[dict]:
    require_role(actor, ROLE_ADMIN)
    if role not in VALID_ROLES:
        raise InvalidUser("Peran tidak dikenal")
    rows = db.query(User).filter(User.role == role).order_by(User.name.asc(), User.id.asc()).all()
    return [{"id": u.id, "name": u.name, "username": u.username, "role": u.role, "is_active": u.is_active}
            for u in rows]


def create_member(db: Session, actor: Optional[SessionUser], *, name: str, username: str, role: str,
                  password: Optional[str] = None, parent_name: Optional[str] = None,
                  subject: Optional[str] = None, halaqah_id: Optional[int] = None,
                  shift_id: Optional[int] = None, is_active: bool = True) -> User:
    """Admin legt Santri oder Guru an; Passwort ist standardmaessig die NIS/NIP."""
    require_role(actor, ROLE_ADMIN)
    if role not in (ROLE_SANTRI, ROLE_GURU):
        raise InvalidUser("Peran harus SANTRI atau GURU")
    if not name.strip() or not username.strip():
        raise InvalidUser("Nama dan NIS/NIP wajib diisi")

    user = User(
        name=name.strip(),
        username=username.strip(),
        password_hash=hash_password(password or username.strip()),
        role=role,
        parent_name=parent_name,
        subject=subject,
        halaqah_id=halaqah_id,
        shift_id=shift_id,
        is_active=is_active,
    )
    with guarded(db, "create member"):
        db.add(user)
        try:
            db.flush()
        except IntegrityError as exc:
            raise InvalidUser("NIS/NIP sudah terdaftar") from exc
    commit(db, "create member")
    logger.info("%s %s created", role, user.username)
    return user
