"""
Authorization Guard

Decides whether a verified principal may read or post to an account.

Any verified principal may read any account, and a parent may post to any
account: the account comes from the request path and is not matched against
the token's account claim.
"""

from enum import Enum

from .errors import ForbiddenError
from .identity import Claims
from .logging_config import get_logger, log_action


class AccessMode(Enum):
    """Kind of access a request needs"""
    READ = "read"
    WRITE = "write"


class AuthorizationGuard:
    """Role-based gate in front of the ledger reader and writer"""

    def __init__(self):
        self.logger = get_logger("family_bank.authorization")

    def authorize(self, claims: Claims, account: int, mode: AccessMode) -> None:
        """
        Authorize access to an account.

        Raises:
            ForbiddenError: write requested by anything other than a parent
        """
        if mode is AccessMode.READ:
            return

        if not claims.is_parent:
            log_action(
                self.logger, "warning", "Write denied for non-parent role",
                user_id=claims.subject,
                action="post_transaction",
                resource=f"account:{account}",
                extra={"role": claims.role}
            )
            raise ForbiddenError(f"role {claims.role!r} may not post transactions")
