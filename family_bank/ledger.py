"""
Ledger Reader Module

Loads an account's current balance together with one page of its transaction
history, newest first.

History paging is tolerant of bad rows: a row that cannot be decoded is logged
and left out of the page, while a failure to read the balance fails the whole
request.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from .logging_config import get_logger, log_action
from .storage import SQLITE_TIMESTAMP_FORMAT, StorageInterface


DEFAULT_PAGE_SIZE = 10

# Largest value a store's signed 64-bit INTEGER column or OFFSET accepts
MAX_INT64 = 2 ** 63 - 1


@dataclass
class TransactionView:
    """One history entry as returned to clients"""
    date: int  # Unix seconds
    comment: str
    amount: int


@dataclass
class AccountView:
    """Current balance plus one page of history"""
    balance: int
    transactions: List[TransactionView] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_page(raw: Optional[Union[str, int]]) -> int:
    """Page number from query input; absent, negative, non-numeric or out-of-range input means 0"""
    if raw is None or isinstance(raw, bool):
        return 0
    try:
        page = int(raw)
    except (TypeError, ValueError):
        return 0
    return page if 0 <= page <= MAX_INT64 else 0


def to_unix_seconds(value: Any) -> int:
    """Normalize a stored timestamp to integer Unix seconds (naive values are UTC)"""
    if isinstance(value, datetime):
        timestamp = value
    elif isinstance(value, str):
        try:
            timestamp = datetime.strptime(value, SQLITE_TIMESTAMP_FORMAT)
        except ValueError:
            timestamp = datetime.fromisoformat(value)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    else:
        raise TypeError(f"Unsupported timestamp type: {type(value).__name__}")

    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return int(timestamp.timestamp())


def _decode_row(row: Dict[str, Any]) -> TransactionView:
    amount = row["amount"]
    comment = row["descr"]
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError(f"amount must be an integer, got {type(amount).__name__}")
    if not isinstance(comment, str):
        raise TypeError(f"descr must be a string, got {type(comment).__name__}")
    return TransactionView(date=to_unix_seconds(row["tstamp"]), comment=comment, amount=amount)


class LedgerReader:
    """Read side of the ledger: balances and paged history"""

    def __init__(self, storage: StorageInterface, page_size: int = DEFAULT_PAGE_SIZE):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.storage = storage
        self.page_size = page_size
        self.logger = get_logger("family_bank.ledger")

    def load_account(self, account: int, page: int = 0) -> AccountView:
        """
        Load balance and one history page for an account.

        Args:
            account: account number
            page: zero-based page index; negative values are treated as 0

        Returns:
            AccountView with up to ``page_size`` transactions, newest first

        Raises:
            NotFoundError: account does not exist
            StorageError: any other storage failure
        """
        page = max(page, 0)
        balance = self.storage.get_balance(account)
        offset = page * self.page_size
        if offset > MAX_INT64:
            # No store holds that many rows
            rows = []
        else:
            rows = self.storage.fetch_transactions(account, limit=self.page_size, offset=offset)

        view = AccountView(balance=balance)
        for position, row in enumerate(rows):
            try:
                view.transactions.append(_decode_row(row))
            except (KeyError, TypeError, ValueError, OverflowError) as e:
                log_action(
                    self.logger, "warning", f"Skipping undecodable transaction row: {e}",
                    action="load_account",
                    resource=f"account:{account}",
                    extra={"page": page, "position": position}
                )
        return view
