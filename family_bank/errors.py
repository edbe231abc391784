"""
Error Taxonomy

All failures raised by the ledger-access core. The HTTP layer maps each branch
to a status code; nothing below carries client-facing detail.
"""


class FamilyBankError(Exception):
    """Base class for all family bank errors"""


class ConfigurationError(FamilyBankError):
    """Invalid or missing startup configuration"""


class VerificationError(FamilyBankError):
    """Bearer credential failed signature, claim or validity checks"""


class AuthError(FamilyBankError):
    """Verified principal is not allowed to perform the request"""


class ForbiddenError(AuthError):
    """Principal's role does not permit the requested access"""


class StorageError(FamilyBankError):
    """Any failure talking to the ledger store"""


class NotFoundError(StorageError):
    """Account does not exist"""


class BadRequestError(StorageError):
    """Request payload could not be decoded"""
