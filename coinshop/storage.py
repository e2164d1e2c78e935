"""Ledger store: credentials, balances, inventory, catalog and coin history.

Every public method runs in a single unit of work (see Database.unit_of_work):
either all of its statements commit or none do. SQLAlchemy errors are wrapped
in StorageError naming the operation and the step that failed.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Mapping

from sqlalchemy import Integer, String, insert, literal, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, aliased

from coinshop.db import Database
from coinshop.errors import (
    InsufficientBalance,
    InvalidCredentials,
    InvalidRequest,
    ItemNotFound,
    StorageError,
    StorageTimeout,
    UserNotFound,
)
from coinshop.logging_utils import log_event
from coinshop.models import InventoryEntry, Item, Transaction, User

users_t = User.__table__
transactions_t = Transaction.__table__
inventory_t = InventoryEntry.__table__
items_t = Item.__table__


@dataclass(frozen=True)
class UserRecord:
    id: int
    username: str
    password_hash: str


@dataclass(frozen=True)
class InventoryItem:
    item: str
    quantity: int


@dataclass(frozen=True)
class HistoryEntry:
    from_user: str | None
    to_user: str | None
    amount: int
    created_at: datetime


@dataclass(frozen=True)
class CoinHistory:
    sent: list[HistoryEntry] = field(default_factory=list)
    received: list[HistoryEntry] = field(default_factory=list)


@dataclass(frozen=True)
class AccountSnapshot:
    balance: int
    inventory: list[InventoryItem]
    history: CoinHistory


@dataclass(frozen=True)
class CatalogItem:
    name: str
    price: int


@contextmanager
def _step(operation: str, step: str) -> Iterator[None]:
    try:
        yield
    except PoolTimeoutError as exc:
        raise StorageTimeout(f"{operation}: {step} timed out") from exc
    except SQLAlchemyError as exc:
        raise StorageError(f"{operation}: {step} failed") from exc


class LedgerStore:
    def __init__(self, db: Database, logger: logging.Logger, starting_balance: int = 1000):
        self.db = db
        self.logger = logger
        self.starting_balance = starting_balance

    # --- credentials -------------------------------------------------------

    def authenticate(self, username: str, candidate_hash: str) -> UserRecord:
        """Return the stored record for ``username``, registering it first if unseen.

        The returned hash is the stored one; comparing it with the caller's
        password is up to the caller.
        """
        if not candidate_hash:
            raise InvalidCredentials("Password cannot be empty")
        try:
            with _step("authenticate", "commit"):
                with self.db.unit_of_work("authenticate") as db:
                    with _step("authenticate", "create user"):
                        created = self._create_user_if_absent(db, username, candidate_hash)
                    record = self._read_user(db, username)
        except StorageError as exc:
            if not isinstance(exc.__cause__, IntegrityError):
                raise
            # lost a race with a concurrent first login for the same username
            created = False
            with _step("authenticate", "commit"):
                with self.db.unit_of_work("authenticate") as db:
                    record = self._read_user(db, username)
        if created:
            log_event(self.logger, "user_registered", user_id=record.id, username=record.username,
                      balance=self.starting_balance)
        return record

    def _create_user_if_absent(self, db: Session, username: str, password_hash: str) -> bool:
        stmt = insert(users_t).from_select(
            ["username", "password_hash", "balance"],
            select(
                literal(username, String),
                literal(password_hash, String),
                literal(self.starting_balance, Integer),
            ).where(~select(User.id).where(User.username == username).exists()),
        )
        return db.execute(stmt).rowcount == 1

    def _read_user(self, db: Session, username: str) -> UserRecord:
        with _step("authenticate", "read user"):
            row = db.execute(
                select(User.id, User.username, User.password_hash).where(User.username == username)
            ).one_or_none()
        if row is None:
            raise StorageError("authenticate: read user returned no row")
        return UserRecord(id=row.id, username=row.username, password_hash=row.password_hash)

    # --- reads ---------------------------------------------------------------

    def get_balance(self, user_id: int) -> int:
        with _step("get_balance", "read balance"):
            with self.db.unit_of_work("get_balance") as db:
                balance = self._read_balance(db, user_id)
        if balance is None:
            raise UserNotFound()
        return balance

    def get_inventory(self, user_id: int) -> list[InventoryItem]:
        with _step("get_inventory", "read inventory"):
            with self.db.unit_of_work("get_inventory") as db:
                return self._read_inventory(db, user_id)

    def get_coin_history(self, user_id: int) -> CoinHistory:
        """Transfers sent and received by ``user_id``, oldest first.

        A counterpart whose user row no longer exists shows up as ``None``.
        """
        with _step("get_coin_history", "read history"):
            with self.db.unit_of_work("get_coin_history") as db:
                return self._read_history(db, user_id)

    def get_account(self, user_id: int) -> AccountSnapshot:
        """Balance, inventory and coin history read in one transaction."""
        with _step("get_account", "read account"):
            with self.db.unit_of_work("get_account", isolation_level="REPEATABLE READ") as db:
                balance = self._read_balance(db, user_id)
                if balance is None:
                    raise UserNotFound()
                inventory = self._read_inventory(db, user_id)
                history = self._read_history(db, user_id)
        return AccountSnapshot(balance=balance, inventory=inventory, history=history)

    def _read_balance(self, db: Session, user_id: int) -> int | None:
        return db.execute(select(User.balance).where(User.id == user_id)).scalar_one_or_none()

    def _read_inventory(self, db: Session, user_id: int) -> list[InventoryItem]:
        rows = db.execute(
            select(InventoryEntry.item, InventoryEntry.quantity)
            .where(InventoryEntry.user_id == user_id)
            .order_by(InventoryEntry.item)
        ).all()
        return [InventoryItem(item=r.item, quantity=r.quantity) for r in rows]

    def _read_history(self, db: Session, user_id: int) -> CoinHistory:
        return CoinHistory(
            sent=self._history(db, Transaction.from_user_id == user_id),
            received=self._history(db, Transaction.to_user_id == user_id),
        )

    def _history(self, db: Session, condition) -> list[HistoryEntry]:
        sender = aliased(User)
        receiver = aliased(User)
        rows = db.execute(
            select(
                sender.username.label("from_user"),
                receiver.username.label("to_user"),
                Transaction.amount,
                Transaction.created_at,
            )
            .select_from(Transaction)
            .outerjoin(sender, Transaction.from_user_id == sender.id)
            .outerjoin(receiver, Transaction.to_user_id == receiver.id)
            .where(condition)
            .order_by(Transaction.id)
        ).all()
        return [
            HistoryEntry(from_user=r.from_user, to_user=r.to_user, amount=r.amount, created_at=r.created_at)
            for r in rows
        ]

    # --- mutations -----------------------------------------------------------

    def _debit(self, db: Session, operation: str, user_id: int, amount: int) -> None:
        # the balance guard keeps concurrent debits from overdrawing
        with _step(operation, "debit balance"):
            debited = db.execute(
                update(users_t)
                .where(users_t.c.id == user_id, users_t.c.balance >= amount)
                .values(balance=users_t.c.balance - amount)
            ).rowcount
            if debited:
                return
            found = db.execute(select(User.id).where(User.id == user_id)).first() is not None
        if not found:
            raise UserNotFound("Sender not found")
        raise InsufficientBalance()

    def send_coin(self, from_user_id: int, to_username: str, amount: int) -> int:
        """Move ``amount`` coins to ``to_username``; returns the receiver's id."""
        if amount <= 0:
            raise InvalidRequest("Amount must be > 0")
        with _step("send_coin", "commit"):
            with self.db.unit_of_work("send_coin") as db:
                with _step("send_coin", "resolve receiver"):
                    to_user_id = db.execute(
                        select(User.id).where(User.username == to_username)
                    ).scalar_one_or_none()
                if to_user_id is None:
                    raise UserNotFound("Receiver not found")
                if to_user_id == from_user_id:
                    raise InvalidRequest("Cannot transfer to yourself")

                self._debit(db, "send_coin", from_user_id, amount)

                with _step("send_coin", "credit receiver"):
                    credited = db.execute(
                        update(users_t)
                        .where(users_t.c.id == to_user_id)
                        .values(balance=users_t.c.balance + amount)
                    ).rowcount
                if not credited:
                    raise UserNotFound("Receiver not found")

                with _step("send_coin", "record transaction"):
                    db.execute(
                        insert(transactions_t).values(
                            from_user_id=from_user_id,
                            to_user_id=to_user_id,
                            amount=amount,
                        )
                    )
        log_event(self.logger, "transfer_success", from_user_id=from_user_id, to_user_id=to_user_id, amount=amount)
        return to_user_id

    def buy_item(self, user_id: int, item_name: str) -> int:
        """Spend the item's price and add one unit to the inventory; returns the price."""
        with _step("buy_item", "commit"):
            with self.db.unit_of_work("buy_item") as db:
                with _step("buy_item", "look up price"):
                    price = db.execute(select(Item.price).where(Item.name == item_name)).scalar_one_or_none()
                if price is None:
                    raise ItemNotFound()

                self._debit(db, "buy_item", user_id, price)

                # update first, then insert-if-absent: a repeat purchase bumps the
                # existing row and the insert becomes a no-op
                with _step("buy_item", "increment inventory"):
                    db.execute(
                        update(inventory_t)
                        .where(inventory_t.c.user_id == user_id, inventory_t.c.item == item_name)
                        .values(quantity=inventory_t.c.quantity + 1)
                    )
                with _step("buy_item", "create inventory"):
                    db.execute(
                        insert(inventory_t).from_select(
                            ["user_id", "item", "quantity"],
                            select(
                                literal(user_id, Integer),
                                literal(item_name, String),
                                literal(1, Integer),
                            ).where(
                                ~select(InventoryEntry.id)
                                .where(InventoryEntry.user_id == user_id, InventoryEntry.item == item_name)
                                .exists()
                            ),
                        )
                    )
        log_event(self.logger, "purchase_success", user_id=user_id, item=item_name, price=price)
        return price

    # --- catalog -------------------------------------------------------------

    def list_items(self) -> list[CatalogItem]:
        with _step("list_items", "read items"):
            with self.db.unit_of_work("list_items") as db:
                rows = db.execute(select(Item.name, Item.price).order_by(Item.name)).all()
        return [CatalogItem(name=r.name, price=r.price) for r in rows]

    def seed_items(self, catalog: Mapping[str, int]) -> int:
        """Insert catalog items that are not there yet. Existing prices are left alone."""
        inserted = 0
        with _step("seed_items", "commit"):
            with self.db.unit_of_work("seed_items") as db:
                for name, price in catalog.items():
                    if price <= 0:
                        raise InvalidRequest(f"Price of {name!r} must be > 0")
                    with _step("seed_items", f"insert {name}"):
                        inserted += db.execute(
                            insert(items_t).from_select(
                                ["name", "price"],
                                select(literal(name, String), literal(price, Integer)).where(
                                    ~select(Item.id).where(Item.name == name).exists()
                                ),
                            )
                        ).rowcount
        log_event(self.logger, "catalog_seeded", inserted=inserted, total=len(catalog))
        return inserted
