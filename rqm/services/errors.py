"""Fehler der Buchhaltungslogik.

Jede Klasse traegt eine Meldung, die unveraendert an den Benutzer geht
(Indonesisch). ``main.py`` bildet sie auf HTTP-Status ab.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class RqmError(Exception):
    default_message = "Terjadi kesalahan"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    @property
    def code(self) -> str:
        return type(self).__name__


class Unauthorized(RqmError):
    default_message = "Unauthorized"


class NotFound(RqmError):
    default_message = "Data tidak ditemukan"


class StorageError(RqmError):
    default_message = "Gagal menyimpan data, silakan coba lagi"


class ValidationError(RqmError):
    """Basis fuer alle Pruefungen vor einer Mutation."""


class InvalidCategory(ValidationError):
    default_message = "Kategori transaksi tidak valid atau tidak aktif"


class CategoryInUse(ValidationError):
    default_message = "Kategori masih digunakan oleh transaksi"


class InvalidAmount(ValidationError):
    default_message = "Nominal harus lebih dari 0"


class InvalidUser(ValidationError):
    default_message = "Data pengguna tidak valid"


class MissingStudent(ValidationError):
    default_message = "Santri wajib dipilih untuk kategori ini"


class MissingTeacher(ValidationError):
    default_message = "Guru wajib dipilih untuk kategori ini"


class DuplicateMonthlyPayment(ValidationError):
    default_message = "Pembayaran bulan ini sudah tercatat"


class InsufficientSavingsBalance(ValidationError):
    default_message = "Saldo tabungan tidak mencukupi"


class InstallmentNotEnabled(ValidationError):
    default_message = "Cicilan belum diaktifkan untuk santri ini"


class OutstandingBalance(ValidationError):
    default_message = "Cicilan bulan ini belum lunas"


def commit(db: Session, context: str) -> None:
    """Commit; Storage-Fehler werden zurueckgerollt, geloggt und als StorageError geworfen."""
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Storage failure during %s", context)
        raise StorageError() from exc


@contextmanager
def guarded(db: Session, context: str) -> Iterator[None]:
    """Block vor dem Commit: jeder Fehler rollt zurueck, Storage-Fehler werden zu StorageError."""
    try:
        yield
    except RqmError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Storage failure during %s", context)
        raise StorageError() from exc
