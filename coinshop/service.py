"""Ledger facade: the four operations offered to API callers.

authenticate -> token, then every other call presents that token. Errors are
always LedgerError subclasses; nothing is retried here.
"""
import logging
from dataclasses import dataclass, field

from coinshop.auth import PasswordHasher
from coinshop.errors import InvalidCredentials, InvalidRequest, LedgerError
from coinshop.logging_utils import log_event
from coinshop.models import USERNAME_MAX_LENGTH
from coinshop.observability import record_ledger_operation
from coinshop.storage import HistoryEntry, InventoryItem, LedgerStore
from coinshop.tokens import TokenIssuer


@dataclass(frozen=True)
class AccountSummary:
    balance: int
    inventory: list[InventoryItem] = field(default_factory=list)
    sent: list[HistoryEntry] = field(default_factory=list)
    received: list[HistoryEntry] = field(default_factory=list)


class LedgerService:
    def __init__(self, store: LedgerStore, tokens: TokenIssuer, hasher: PasswordHasher, logger: logging.Logger):
        self.store = store
        self.tokens = tokens
        self.hasher = hasher
        self.logger = logger

    def authenticate(self, username: str, password: str) -> str:
        username = (username or "").strip()
        if not username or not password:
            log_event(self.logger, "auth_failed", reason="missing_input", username=username or None)
            record_ledger_operation("authenticate", "rejected")
            raise InvalidCredentials()
        if len(username) > USERNAME_MAX_LENGTH:
            log_event(self.logger, "auth_failed", reason="username_too_long", username_length=len(username))
            record_ledger_operation("authenticate", "rejected")
            raise InvalidCredentials()

        candidate_hash = self.hasher.hash_password(password)
        try:
            record = self.store.authenticate(username, candidate_hash)
        except LedgerError:
            record_ledger_operation("authenticate", "error")
            raise
        if not self.hasher.verify_password(password, record.password_hash):
            log_event(self.logger, "auth_failed", reason="invalid_password", user_id=record.id)
            record_ledger_operation("authenticate", "rejected")
            raise InvalidCredentials()

        token = self.tokens.issue_token(record.id)
        log_event(self.logger, "auth_success", user_id=record.id, username=record.username)
        record_ledger_operation("authenticate", "ok")
        return token

    def get_account_summary(self, token: str | None) -> AccountSummary:
        user_id = self.tokens.resolve_token(token)
        try:
            account = self.store.get_account(user_id)
        except LedgerError:
            record_ledger_operation("account_summary", "error")
            raise
        record_ledger_operation("account_summary", "ok")
        return AccountSummary(
            balance=account.balance,
            inventory=account.inventory,
            sent=account.history.sent,
            received=account.history.received,
        )

    def transfer(self, token: str | None, to_username: str, amount: int) -> None:
        user_id = self.tokens.resolve_token(token)
        to_username = (to_username or "").strip()
        try:
            if not to_username:
                raise InvalidRequest("Missing receiver")
            if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                raise InvalidRequest("Amount must be > 0")
            self.store.send_coin(user_id, to_username, amount)
        except LedgerError as exc:
            log_event(self.logger, "transfer_rejected", from_user_id=user_id, to_username=to_username or None,
                      amount=amount, reason=exc.code)
            record_ledger_operation("transfer", exc.code)
            raise
        record_ledger_operation("transfer", "ok")

    def purchase(self, token: str | None, item_name: str) -> None:
        user_id = self.tokens.resolve_token(token)
        try:
            self.store.buy_item(user_id, item_name)
        except LedgerError as exc:
            log_event(self.logger, "purchase_rejected", user_id=user_id, item=item_name, reason=exc.code)
            record_ledger_operation("purchase", exc.code)
            raise
        record_ledger_operation("purchase", "ok")
