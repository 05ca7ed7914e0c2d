import os

os.environ.setdefault("RQM_DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from rqm.models.base import Base  # noqa: E402
from rqm.models.entities import Transaction, TransactionCategory  # noqa: E402
from rqm.models.user import User, ROLE_ADMIN, ROLE_KOMITE, ROLE_SANTRI, ROLE_GURU  # noqa: E402
from rqm.services.auth import SessionUser, hash_password  # noqa: E402
from rqm.services.classifier import classify  # noqa: E402
from rqm.services.db_init import seed_categories  # noqa: E402


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
    session = Session()
    seed_categories(session)
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role, name=None, username=None, password="rahasia", **extra):
        counter["n"] += 1
        user = User(
            name=name or f"{role.title()} {counter['n']}",
            username=username or f"{role.lower()}{counter['n']}",
            password_hash=hash_password(password, iterations=1000),
            role=role,
            is_active=True,
            **extra,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_category(db):
    def _make(code, name, type_="INCOME", **extra):
        category = TransactionCategory(
            code=code, name=name, type=type_, kind=classify(code, name, type_).value,
            is_active=extra.pop("is_active", True), **extra,
        )
        db.add(category)
        db.commit()
        return category

    return _make


@pytest.fixture
def add_txn(db):
    """Direkter Insert ohne Pruefungen, fuer Ausgangsbestaende."""
    def _add(creator, code, amount, when=datetime(2025, 3, 5), student=None, status="NONE", **extra):
        txn = Transaction(
            type=code, amount=amount, date=when, creator_id=creator.id,
            student_id=student.id if student is not None else None,
            is_handover=status != "NONE", handover_status=status, **extra,
        )
        db.add(txn)
        db.commit()
        return txn

    return _add


@pytest.fixture
def admin(make_user):
    return make_user(ROLE_ADMIN, name="Administrator", username="admin")


@pytest.fixture
def komite(make_user):
    return make_user(ROLE_KOMITE, name="Komite RQM", username="komite")


@pytest.fixture
def santri(make_user):
    return make_user(ROLE_SANTRI, name="Ahmad", username="1001")


@pytest.fixture
def santri2(make_user):
    return make_user(ROLE_SANTRI, name="Budi", username="1002")


@pytest.fixture
def guru(make_user):
    return make_user(ROLE_GURU, name="Ustadz Hasan", username="G01")


@pytest.fixture
def as_admin(admin):
    return SessionUser(user_id=admin.id, role=ROLE_ADMIN)


@pytest.fixture
def as_komite(komite):
    return SessionUser(user_id=komite.id, role=ROLE_KOMITE)


@pytest.fixture
def as_santri(santri):
    return SessionUser(user_id=santri.id, role=ROLE_SANTRI)
