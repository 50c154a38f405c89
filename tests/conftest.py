import os
import tempfile

os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))
os.environ["LEDGER_TIMEZONE"] = "UTC"

import pytest
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from database import Base, create_ledger_engine
from models import User


@pytest.fixture()
def engine():
    eng = create_ledger_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine, autoflush=False, expire_on_commit=False) as session:
        yield session


@pytest.fixture()
def user_id(session) -> int:
    user = User()
    session.add(user)
    session.commit()
    return user.id
