"""
Transaction Posting Module

Posts a transaction as one atomic unit: the account balance is adjusted by the
amount and the transaction is appended to the log, and either both commit or
neither does.

Amounts are not validated (an account may go negative) and posting is not
idempotent: a client retrying after an ambiguous failure can post twice.
"""

import json
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, StrictInt, StrictStr, ValidationError

from .errors import BadRequestError, NotFoundError, StorageError
from .logging_config import get_logger, log_action
from .storage import StorageInterface


class TransactionRequest(BaseModel):
    """Body of a posting request"""
    amount: StrictInt = Field(..., description="Signed amount in minor units; negative = debit")
    desc: StrictStr = Field(..., description="Free-text description")


class LedgerWriter:
    """Write side of the ledger: atomic balance delta + log append"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.logger = get_logger("family_bank.transactions")

    def decode_request(self, body: bytes) -> TransactionRequest:
        """
        Decode a JSON posting body.

        Raises:
            BadRequestError: body is not a JSON object with integer ``amount``
                and string ``desc``
        """
        try:
            payload = json.loads(body)
        except (ValueError, TypeError) as e:
            raise BadRequestError(f"Request body is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise BadRequestError("Request body must be a JSON object")
        try:
            return TransactionRequest(**payload)
        except ValidationError as e:
            raise BadRequestError(f"Invalid transaction request: {e.error_count()} error(s)") from e

    def post_transaction(
        self,
        account: int,
        subject: str,
        amount: int,
        description: str,
        timestamp: Optional[datetime] = None
    ) -> None:
        """
        Apply ``amount`` to the account balance and append the transaction.

        Args:
            account: account number taken from the request path
            subject: subject of the verified credential
            amount: signed amount; positive credits, negative debits
            description: free-text description
            timestamp: posting time, defaults to now (UTC, whole seconds)

        Raises:
            NotFoundError: account does not exist; nothing is written
            StorageError: any storage failure; nothing is written
        """
        posted_at = (timestamp or datetime.now(timezone.utc)).replace(microsecond=0)
        resource = f"account:{account}"

        try:
            with self.storage.atomic() as store:
                if store.adjust_balance(account, amount) == 0:
                    raise NotFoundError(f"Account {account} not found")
                store.append_transaction(account, subject, posted_at, amount, description)
        except StorageError as e:
            log_action(
                self.logger, "error", f"Transaction rolled back: {e}",
                user_id=subject, action="post_transaction", resource=resource
            )
            raise
        except Exception as e:
            log_action(
                self.logger, "error", f"Transaction rolled back: {type(e).__name__}: {e}",
                user_id=subject, action="post_transaction", resource=resource
            )
            raise StorageError("Transaction failed") from e

        log_action(
            self.logger, "info", "Transaction posted",
            user_id=subject, action="post_transaction", resource=resource,
            extra={"amount": amount, "tstamp": posted_at.isoformat()}
        )

    def post_request(self, account: int, subject: str, body: bytes) -> None:
        """Decode a posting body and post it"""
        request = self.decode_request(body)
        self.post_transaction(account, subject, request.amount, request.desc)
