"""Ledger store: atomic balance, inventory and history operations."""
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import event, func, insert, select
from sqlalchemy.exc import OperationalError

from coinshop.errors import (
    InsufficientBalance,
    InvalidCredentials,
    InvalidRequest,
    ItemNotFound,
    StorageError,
    UserNotFound,
)
from coinshop.models import Transaction, User


def _user_count(database, username: str) -> int:
    with database.unit_of_work("test_count") as db:
        return db.execute(select(func.count(User.id)).where(User.username == username)).scalar_one()


# --- authenticate --------------------------------------------------------------


def test_authenticate_registers_new_user_with_starting_balance(store):
    record = store.authenticate("alice", "hash-1")

    assert record.id > 0
    assert record.username == "alice"
    assert record.password_hash == "hash-1"
    assert store.get_balance(record.id) == 1000


def test_authenticate_twice_keeps_one_row_and_returns_stored_hash(store, database):
    first = store.authenticate("alice", "hash-1")
    second = store.authenticate("alice", "hash-2")

    assert second.id == first.id
    assert second.password_hash == "hash-1"
    assert _user_count(database, "alice") == 1


def test_authenticate_rejects_empty_password_before_touching_store(store, database):
    with pytest.raises(InvalidCredentials):
        store.authenticate("alice", "")
    assert _user_count(database, "alice") == 0


def test_concurrent_first_logins_create_one_user(store, database):
    with ThreadPoolExecutor(max_workers=4) as ex:
        records = list(ex.map(lambda i: store.authenticate("carol", f"hash-{i}"), range(8)))

    assert len({r.id for r in records}) == 1
    assert len({r.password_hash for r in records}) == 1
    assert _user_count(database, "carol") == 1


# --- reads ---------------------------------------------------------------------


def test_get_balance_unknown_user(store):
    with pytest.raises(UserNotFound):
        store.get_balance(404)


def test_inventory_is_empty_for_new_user(store, add_user):
    uid = add_user("alice")
    assert store.get_inventory(uid) == []


def test_inventory_is_ordered_by_item(store, add_user, add_item):
    uid = add_user("alice")
    add_item("umbrella", 10)
    add_item("cup", 10)
    add_item("pen", 10)
    for name in ("umbrella", "cup", "pen", "cup"):
        store.buy_item(uid, name)

    inventory = store.get_inventory(uid)

    assert [(x.item, x.quantity) for x in inventory] == [("cup", 2), ("pen", 1), ("umbrella", 1)]


def test_coin_history_lists_sent_and_received_in_insertion_order(store, add_user):
    alice = add_user("alice")
    bob = add_user("bob")
    add_user("carol")
    store.send_coin(alice, "bob", 10)
    store.send_coin(alice, "carol", 20)
    store.send_coin(bob, "alice", 5)

    history = store.get_coin_history(alice)

    assert [(x.to_user, x.amount) for x in history.sent] == [("bob", 10), ("carol", 20)]
    assert all(x.from_user == "alice" for x in history.sent)
    assert [(x.from_user, x.amount) for x in history.received] == [("bob", 5)]
    assert history.received[0].created_at is not None
    assert store.get_coin_history(bob).received[0].from_user == "alice"


def test_coin_history_with_missing_counterpart_yields_none(store, database, add_user):
    alice = add_user("alice")
    with database.unit_of_work("test_orphan") as db:
        db.execute(insert(Transaction.__table__).values(from_user_id=alice, to_user_id=9999, amount=7))

    history = store.get_coin_history(alice)

    assert len(history.sent) == 1
    assert history.sent[0].to_user is None
    assert history.sent[0].amount == 7


def test_get_account_reads_everything_in_one_unit_of_work(store, database, add_user, add_item, monkeypatch):
    alice = add_user("alice")
    add_user("bob")
    add_item("cup", 20)
    store.send_coin(alice, "bob", 100)
    store.buy_item(alice, "cup")

    operations = []
    unit_of_work = database.unit_of_work

    def recording_unit_of_work(operation, **kwargs):
        operations.append(operation)
        return unit_of_work(operation, **kwargs)

    monkeypatch.setattr(database, "unit_of_work", recording_unit_of_work)
    account = store.get_account(alice)

    assert operations == ["get_account"]
    assert account.balance == 880
    assert [(x.item, x.quantity) for x in account.inventory] == [("cup", 1)]
    assert [(x.to_user, x.amount) for x in account.history.sent] == [("bob", 100)]
    assert account.history.received == []


def test_get_account_unknown_user(store):
    with pytest.raises(UserNotFound):
        store.get_account(404)


# --- send_coin -----------------------------------------------------------------


def test_send_coin_conserves_total_and_records_one_transaction(store, add_user, ledger_state):
    alice = add_user("alice")
    add_user("bob")
    before = ledger_state()

    store.send_coin(alice, "bob", 200)

    after = ledger_state()
    assert after["balances"] == {"alice": 800, "bob": 1200}
    assert sum(after["balances"].values()) == sum(before["balances"].values())
    assert after["transactions"] == before["transactions"] + 1


def test_send_coin_whole_balance_is_allowed(store, add_user):
    alice = add_user("alice", balance=300)
    add_user("bob")

    store.send_coin(alice, "bob", 300)

    assert store.get_balance(alice) == 0


def test_send_coin_unknown_receiver(store, add_user, ledger_state):
    alice = add_user("alice")
    before = ledger_state()

    with pytest.raises(UserNotFound):
        store.send_coin(alice, "nobody", 10)

    assert ledger_state() == before


def test_send_coin_unknown_sender(store, add_user, ledger_state):
    add_user("bob")
    before = ledger_state()

    with pytest.raises(UserNotFound):
        store.send_coin(12345, "bob", 10)

    assert ledger_state() == before


def test_send_coin_insufficient_balance_changes_nothing(store, add_user, ledger_state):
    alice = add_user("alice", balance=50)
    add_user("bob")
    before = ledger_state()

    with pytest.raises(InsufficientBalance):
        store.send_coin(alice, "bob", 51)

    assert ledger_state() == before


def test_send_coin_to_self_is_rejected(store, add_user, ledger_state):
    alice = add_user("alice")
    before = ledger_state()

    with pytest.raises(InvalidRequest):
        store.send_coin(alice, "alice", 10)

    assert ledger_state() == before


@pytest.mark.parametrize("amount", [0, -5])
def test_send_coin_requires_positive_amount(store, add_user, amount):
    alice = add_user("alice")
    add_user("bob")

    with pytest.raises(InvalidRequest):
        store.send_coin(alice, "bob", amount)

    assert store.get_balance(alice) == 1000


def test_send_coin_rolls_back_debit_when_credit_fails(store, database, add_user, ledger_state):
    alice = add_user("alice")
    add_user("bob")
    before = ledger_state()

    def fail_credit(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("UPDATE users") and "users.balance +" in statement:
            raise OperationalError(statement, parameters, Exception("receiver row unavailable"))

    event.listen(database.engine, "before_cursor_execute", fail_credit)
    try:
        with pytest.raises(StorageError) as excinfo:
            store.send_coin(alice, "bob", 200)
    finally:
        event.remove(database.engine, "before_cursor_execute", fail_credit)

    assert "credit receiver" in str(excinfo.value)
    assert ledger_state() == before


def test_concurrent_debits_never_overdraw(store, add_user, ledger_state):
    alice = add_user("alice", balance=1000)
    add_user("bob", balance=0)

    def send(_):
        try:
            store.send_coin(alice, "bob", 150)
            return "ok"
        except InsufficientBalance:
            return "insufficient"

    with ThreadPoolExecutor(max_workers=8) as ex:
        outcomes = list(ex.map(send, range(10)))

    state = ledger_state()
    assert outcomes.count("ok") == 6
    assert outcomes.count("insufficient") == 4
    assert state["balances"] == {"alice": 100, "bob": 900}
    assert state["transactions"] == 6


# --- buy_item ------------------------------------------------------------------


def test_buy_item_twice_increments_single_inventory_row(store, add_user, add_item, ledger_state):
    alice = add_user("alice")
    add_item("cup", 20)

    assert store.buy_item(alice, "cup") == 20
    store.buy_item(alice, "cup")

    assert ledger_state()["inventory"] == [(alice, "cup", 2)]
    assert store.get_balance(alice) == 960


def test_buy_item_unknown_item(store, add_user, ledger_state):
    alice = add_user("alice")
    before = ledger_state()

    with pytest.raises(ItemNotFound):
        store.buy_item(alice, "spaceship")

    assert ledger_state() == before


def test_buy_item_insufficient_balance_changes_nothing(store, add_user, add_item, ledger_state):
    alice = add_user("alice", balance=100)
    add_item("hoody", 300)
    before = ledger_state()

    with pytest.raises(InsufficientBalance):
        store.buy_item(alice, "hoody")

    assert ledger_state() == before


def test_buy_item_unknown_user(store, add_item):
    add_item("cup", 20)

    with pytest.raises(UserNotFound):
        store.buy_item(777, "cup")


# --- catalog -------------------------------------------------------------------


def test_seed_items_is_idempotent_and_keeps_existing_prices(store, add_item):
    add_item("cup", 99)

    assert store.seed_items({"cup": 20, "pen": 10}) == 1
    assert store.seed_items({"cup": 20, "pen": 10}) == 0

    assert [(x.name, x.price) for x in store.list_items()] == [("cup", 99), ("pen", 10)]
