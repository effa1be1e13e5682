from datetime import datetime

import pytest

from cashpath import models
from cashpath.database import init_db, make_engine, make_session_factory
from cashpath.milestones import EvenSpacingSuggester


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'cashpath-test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def suggester():
    return EvenSpacingSuggester()


def make_user(db, name="Alice"):
    user = models.User(name=name, email=f"{name.lower()}@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_wallet(db, user, name="Main", balance=0, type="bank"):
    wallet = models.Wallet(user_id=user.id, name=name, type=type, balance=balance)
    db.add(wallet)
    db.commit()
    db.refresh(wallet)
    return wallet


def make_category(db, user, name="General", type="both"):
    category = models.Category(user_id=user.id, name=name, type=type)
    db.add(category)
    db.commit()
    db.refresh(category)
    return category


@pytest.fixture
def user(db):
    return make_user(db)


@pytest.fixture
def other_user(db):
    return make_user(db, name="Bob")


@pytest.fixture
def wallet(db, user):
    return make_wallet(db, user, balance=1000)


@pytest.fixture
def category(db, user):
    return make_category(db, user)


@pytest.fixture
def now():
    return datetime(2025, 3, 10, 9, 30)
