# rqm/config/settings.py
import os

APP_NAME: str = "RQM Keuangan"
APP_VERSION: str = "0.3.0"
SECRET_KEY: str = os.getenv("RQM_SECRET_KEY", "change-this-in-production-please-32bytes")
SESSION_COOKIE: str = "rqm_session"

# DB-URL (sqlite Datei liegt unter ./db/)
DATABASE_URL: str = os.getenv("RQM_DATABASE_URL", "sqlite:///./db/rqm.db")

LOG_LEVEL: str = os.getenv("RQM_LOG_LEVEL", "INFO").upper()
SQL_ECHO: bool = os.getenv("RQM_SQL_ECHO", "0") in {"1", "true", "True"}

# Passwort-Hashing
PASSWORD_SCHEME: str = "pbkdf2"
PASSWORD_ITERATIONS: int = int(os.getenv("RQM_PASSWORD_ITERATIONS", "310000"))

# Demo-Benutzer und Systemkategorien beim Start anlegen
DEV_SEED: bool = os.getenv("RQM_DEV_SEED", "1") not in {"0", "false", "False"}

# ---------- Kategorie-Codes ----------
CODE_SPP = "SPP"
CODE_CICILAN_SPP = "CICILAN_SPP"
CODE_KAS = "KAS"
CODE_UANG_KAS = "UANG_KAS"
CODE_TABUNGAN = "TABUNGAN"
CODE_PENARIKAN_TABUNGAN = "PENARIKAN_TABUNGAN"
CODE_PEMASUKAN_LAIN = "PEMASUKAN_LAIN"
CODE_PENGELUARAN_KOMITE = "PENGELUARAN_KOMITE"
CODE_PENGELUARAN_ADMIN = "PENGELUARAN_ADMIN"
CODE_HONOR_GURU = "HONOR_GURU"

SPP_CODES = {CODE_SPP, CODE_CICILAN_SPP}
KAS_CODES = {CODE_KAS, CODE_UANG_KAS}
SAVINGS_CODES = {CODE_TABUNGAN, CODE_PENARIKAN_TABUNGAN}

# Fallback, wenn eine Kategorie kein requires_handover gesetzt hat
HANDOVER_FALLBACK_CODES = {CODE_TABUNGAN, CODE_KAS}

# Komite-Kategorieuebersicht zeigt nur diese Codes
KOMITE_BALANCE_CODES = ("INFAQ_BAGI_RAPORT_SANTRI", CODE_TABUNGAN, CODE_UANG_KAS)

RECENT_LIMIT: int = 15
CATEGORY_RECENT_LIMIT: int = 50
TOP_SAVERS_LIMIT: int = 5
DEFAULT_PAGE_SIZE: int = 10


def system_categories() -> list[dict]:
    """
    Systemkategorien, die bei leerer Tabelle angelegt werden.
    is_system=True schuetzt sie vor dem Loeschen.
    """
    return [
        {"name": "Pembayaran SPP", "code": CODE_SPP, "type": "INCOME",
         "show_to_komite": False, "show_to_admin": True},
        {"name": "Tabungan Santri", "code": CODE_TABUNGAN, "type": "INCOME",
         "show_to_komite": True, "show_to_admin": True},
        {"name": "Uang Kas", "code": CODE_KAS, "type": "INCOME",
         "show_to_komite": True, "show_to_admin": True},
        {"name": "Pemasukan Lainnya", "code": CODE_PEMASUKAN_LAIN, "type": "INCOME",
         "show_to_komite": True, "show_to_admin": True},
        {"name": "Penarikan Tabungan", "code": CODE_PENARIKAN_TABUNGAN, "type": "EXPENSE",
         "show_to_komite": True, "show_to_admin": True},
        {"name": "Operasional Komite", "code": CODE_PENGELUARAN_KOMITE, "type": "EXPENSE",
         "show_to_komite": True, "show_to_admin": True},
        {"name": "Pengeluaran Admin", "code": CODE_PENGELUARAN_ADMIN, "type": "EXPENSE",
         "show_to_komite": False, "show_to_admin": True},
    ]
