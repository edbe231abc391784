"""
Authentication dependencies and the ledger system container
"""

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..authorization import AuthorizationGuard
from ..config import FamilyBankConfig
from ..errors import BadRequestError, VerificationError
from ..identity import Claims, IdentityVerifier
from ..ledger import LedgerReader
from ..storage import StorageInterface, create_storage
from ..transactions import LedgerWriter


security = HTTPBearer(auto_error=False)


class LedgerSystem:
    """Ledger access components wired together from one configuration"""

    def __init__(
        self,
        config: FamilyBankConfig,
        storage: Optional[StorageInterface] = None,
        verifier: Optional[IdentityVerifier] = None
    ):
        self.config = config
        self.storage = storage if storage is not None else create_storage(config)
        self.verifier = verifier if verifier is not None else IdentityVerifier.from_config(config)
        self.guard = AuthorizationGuard()
        self.reader = LedgerReader(self.storage, page_size=config.page_size)
        self.writer = LedgerWriter(self.storage)

    def close(self) -> None:
        self.storage.close()


def get_ledger_system(request: Request) -> LedgerSystem:
    return request.app.state.ledger_system


def parse_account_id(raw: str) -> int:
    """Account number from the request path; only ASCII digits are accepted"""
    if not raw or not raw.isascii() or not raw.isdigit():
        raise BadRequestError(f"Invalid account number: {raw!r}")
    return int(raw)


def get_account_id(account: str) -> int:
    """Dependency resolving the ``{account}`` path segment"""
    return parse_account_id(account)


def get_claims(
    account_id: int = Depends(get_account_id),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: LedgerSystem = Depends(get_ledger_system)
) -> Claims:
    """Dependency that verifies the bearer token; runs after the account is parsed"""
    if credentials is None or not credentials.credentials:
        raise VerificationError("missing bearer credential")
    return system.verifier.verify(credentials.credentials)


async def read_body(request: Request) -> bytes:
    return await request.body()
