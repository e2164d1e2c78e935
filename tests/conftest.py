"""Shared fixtures: a fresh SQLite ledger per test, no external services."""
import json
import logging

import pytest
from sqlalchemy import func, select

from coinshop.auth import PasswordHasher
from coinshop.config import Settings
from coinshop.db import Database
from coinshop.logging_utils import get_json_logger
from coinshop.models import InventoryEntry, Item, Transaction, User
from coinshop.service import LedgerService
from coinshop.storage import LedgerStore
from coinshop.tokens import TokenIssuer

SECRET = "test-secret-for-hs256-signing-0123456789"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}",
        jwt_secret=SECRET,
        bcrypt_rounds=4,
        seed_catalog=False,
    )


@pytest.fixture
def logger():
    return get_json_logger("coinshop-tests")


@pytest.fixture
def database(settings, logger):
    db = Database(settings, logger)
    db.start()
    yield db
    db.stop()


@pytest.fixture
def store(database, logger):
    return LedgerStore(database, logger, starting_balance=1000)


@pytest.fixture
def tokens():
    return TokenIssuer(SECRET)


@pytest.fixture
def service(store, tokens, logger):
    return LedgerService(store, tokens, PasswordHasher(rounds=4), logger)


@pytest.fixture
def add_user(database):
    def _add(username: str, balance: int = 1000, password_hash: str = "x") -> int:
        with database.unit_of_work("test_add_user") as db:
            u = User(username=username, password_hash=password_hash, balance=balance)
            db.add(u)
            db.flush()
            return u.id
    return _add


@pytest.fixture
def add_item(database):
    def _add(name: str, price: int) -> None:
        with database.unit_of_work("test_add_item") as db:
            db.add(Item(name=name, price=price))
    return _add


@pytest.fixture
def ledger_state(database):
    """Snapshot of balances, transaction count and inventory rows."""
    def _state() -> dict:
        with database.unit_of_work("test_state") as db:
            balances = dict(db.execute(select(User.username, User.balance)).all())
            tx_count = db.execute(select(func.count(Transaction.id))).scalar_one()
            inventory = sorted(
                (r.user_id, r.item, r.quantity)
                for r in db.execute(select(InventoryEntry.user_id, InventoryEntry.item, InventoryEntry.quantity))
            )
        return {"balances": balances, "transactions": tx_count, "inventory": inventory}
    return _state


class _EventHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.events: list[dict] = []

    def emit(self, record):
        self.events.append(json.loads(record.getMessage()))


@pytest.fixture
def capture_events():
    """Collect the JSON events written to a logger (our loggers do not propagate)."""
    attached = []

    def _capture(target: logging.Logger) -> list[dict]:
        handler = _EventHandler()
        target.addHandler(handler)
        attached.append((target, handler))
        return handler.events

    yield _capture
    for target, handler in attached:
        target.removeHandler(handler)
