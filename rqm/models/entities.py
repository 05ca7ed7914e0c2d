from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean, ForeignKey, CheckConstraint, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship

from .base import Base

# Typen einer Kategorie
TYPE_INCOME = "INCOME"
TYPE_EXPENSE = "EXPENSE"

# Handover-Zustaende
HANDOVER_NONE = "NONE"
HANDOVER_PENDING = "PENDING"
HANDOVER_COMPLETED = "COMPLETED"

# ---------- Kategorien ----------

class TransactionCategory(Base):
    __tablename__ = "transaction_categories"
    id = Column(Integer, primary_key=True)
    code = Column(String(100), nullable=False, unique=True)  # stabil, nie umbenannt
    name = Column(String(200), nullable=False)
    type = Column(String(10), nullable=False, default=TYPE_INCOME)  # INCOME|EXPENSE
    kind = Column(String(20))  # SPP|KAS|SAVINGS_DEPOSIT|... einmalig beim Anlegen gesetzt
    is_active = Column(Boolean, nullable=False, default=True)
    requires_handover = Column(Boolean)  # None -> Fallback ueber Code
    default_amount = Column(Integer, nullable=False, default=0)  # >0 sperrt den Betrag
    show_to_komite = Column(Boolean, nullable=False, default=True)
    show_to_admin = Column(Boolean, nullable=False, default=True)
    is_system = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

# ---------- Transaktionen ----------

class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        # SPP/KAS max. einmal pro Santri und Monat (Cicilan-Zeilen haben keinen Slot)
        UniqueConstraint("student_id", "monthly_slot", name="uq_transactions_student_slot"),
    )

    id = Column(Integer, primary_key=True)
    type = Column(String(100), nullable=False, index=True)  # = Kategorie-Code
    amount = Column(Integer, nullable=False)  # kleinste Waehrungseinheit (Rupiah)
    description = Column(Text)
    date = Column(DateTime, nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), index=True)
    teacher_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    is_handover = Column(Boolean, nullable=False, default=False)
    handover_status = Column(String(10), nullable=False, default=HANDOVER_NONE)
    handover_date = Column(DateTime)
    monthly_slot = Column(String(20))  # z. B. "SPP:2025-03"
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    student = relationship("User", foreign_keys=[student_id])
    teacher = relationship("User", foreign_keys=[teacher_id])
    creator = relationship("User", foreign_keys=[creator_id])

    @property
    def creator_role(self):
        return self.creator.role if self.creator is not None else None

Index("ix_transactions_handover", Transaction.is_handover, Transaction.handover_status)

# ---------- Cicilan (SPP-Ratenzahlung) ----------

class SppInstallmentSettings(Base):
    __tablename__ = "spp_installment_settings"
    id = Column(Integer, primary_key=True)
    student_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    default_amount = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    student = relationship("User")

class SppInstallmentPayment(Base):
    __tablename__ = "spp_installment_payments"
    __table_args__ = (
        CheckConstraint("month >= 0 AND month <= 11", name="ck_installment_month"),
    )
    id = Column(Integer, primary_key=True)
    student_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)  # 0-11
    amount = Column(Integer, nullable=False)
    description = Column(Text)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    created_by = relationship("User", foreign_keys=[created_by_id])

Index("ix_installment_student_period", SppInstallmentPayment.student_id,
      SppInstallmentPayment.year, SppInstallmentPayment.month)
