# rqm/models/user.py
from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from rqm.models.base import Base

# Rollen (Strings, konsistent mit Session und RBAC)
ROLE_ADMIN = "ADMIN"
ROLE_KOMITE = "KOMITE"
ROLE_SANTRI = "SANTRI"
ROLE_GURU = "GURU"

VALID_ROLES = {ROLE_ADMIN, ROLE_KOMITE, ROLE_SANTRI, ROLE_GURU}


class Halaqah(Base):
    __tablename__ = "halaqah"
    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False, unique=True)


class Shift(Base):
    __tablename__ = "shifts"
    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False, unique=True)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("username", name="uq_users_username"),)

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    username = Column(String(100), nullable=False, index=True)  # NIS bei Santri
    password_hash = Column(String(255), nullable=False)
    role = Column(String(16), nullable=False, default=ROLE_SANTRI)
    halaqah_id = Column(Integer, ForeignKey("halaqah.id", ondelete="SET NULL"))
    shift_id = Column(Integer, ForeignKey("shifts.id", ondelete="SET NULL"))
    parent_name = Column(String(255))
    subject = Column(String(255))  # nur Guru
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    halaqah = relationship("Halaqah")
    shift = relationship("Shift")

    def has_role(self, *roles: str) -> bool:
        return self.role in roles
