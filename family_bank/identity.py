"""
Identity Verification Module

Verifies RS256-signed bearer tokens against a statically configured RSA public
key and extracts the typed claim set used by the authorization guard. Every
failure is reported as the same VerificationError so callers cannot tell which
check rejected the token.
"""

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .config import FamilyBankConfig
from .errors import ConfigurationError, VerificationError
from .logging_config import get_logger


logger = get_logger("family_bank.identity")


class Role(str, Enum):
    """Authorization tiers carried in the role claim"""
    PARENT = "parent"  # read + write
    CHILD = "child"    # read only


@dataclass(frozen=True)
class Claims:
    """Verified claim set of a bearer credential"""
    subject: str
    role: str
    account: Optional[str] = None
    name: Optional[str] = None
    expires_at: Optional[datetime] = None
    issued_at: Optional[datetime] = None
    not_before: Optional[datetime] = None

    @property
    def is_parent(self) -> bool:
        return self.role == Role.PARENT.value


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _optional_string(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    return str(value)


def load_public_key(config: FamilyBankConfig) -> rsa.RSAPublicKey:
    """
    Load the token verification key from configuration.

    Accepts, in order of precedence, ``jwt_public_key`` as PEM text or as a
    base64 DER SubjectPublicKeyInfo blob, then ``jwt_public_key_modulus`` as a
    hex modulus combined with ``jwt_public_key_exponent``.

    Raises:
        ConfigurationError: no key configured, or the key cannot be parsed
    """
    try:
        if config.jwt_public_key:
            raw = config.jwt_public_key.strip()
            if raw.startswith("-----BEGIN"):
                # Environment files often carry PEM with escaped newlines
                key = serialization.load_pem_public_key(raw.replace("\\n", "\n").encode())
            else:
                key = serialization.load_der_public_key(base64.b64decode(raw, validate=True))
        elif config.jwt_public_key_modulus:
            modulus = int(config.jwt_public_key_modulus, 16)
            key = rsa.RSAPublicNumbers(config.jwt_public_key_exponent, modulus).public_key()
        else:
            raise ConfigurationError(
                "No token verification key configured "
                "(set FAMILY_BANK_JWT_PUBLIC_KEY or FAMILY_BANK_JWT_PUBLIC_KEY_MODULUS)"
            )
    except (ValueError, TypeError, binascii.Error) as e:
        raise ConfigurationError(f"Invalid token verification key: {e}") from e

    if not isinstance(key, rsa.RSAPublicKey):
        raise ConfigurationError("Token verification key must be an RSA public key")
    return key


class IdentityVerifier:
    """
    Verifies bearer credentials and produces Claims.

    Verification is a pure function of the token, the public key and the
    current time; instances hold no mutable state and are safe to share
    between request threads.
    """

    def __init__(
        self,
        public_key: rsa.RSAPublicKey,
        algorithm: str = "RS256",
        role_claim: str = "https://jan.monster/role",
        account_claim: str = "https://jan.monster/account",
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        leeway: int = 0,
        require_expiry: bool = True
    ):
        self.public_key = public_key
        self.algorithm = algorithm
        self.role_claim = role_claim
        self.account_claim = account_claim
        self.audience = audience
        self.issuer = issuer
        self.leeway = leeway
        self.require_expiry = require_expiry

    @classmethod
    def from_config(cls, config: FamilyBankConfig) -> 'IdentityVerifier':
        """Create a verifier from configuration, loading the public key"""
        return cls(
            public_key=load_public_key(config),
            algorithm=config.jwt_algorithm,
            role_claim=config.jwt_role_claim,
            account_claim=config.jwt_account_claim,
            audience=config.jwt_audience,
            issuer=config.jwt_issuer,
            leeway=config.jwt_leeway_seconds,
            require_expiry=config.jwt_require_expiry
        )

    def _required_claims(self) -> List[str]:
        required = ["sub"]
        if self.require_expiry:
            required.append("exp")
        if self.audience:
            required.append("aud")
        if self.issuer:
            required.append("iss")
        return required

    def verify(self, raw_credential: str) -> Claims:
        """
        Verify a compact signed token and extract its claims.

        Args:
            raw_credential: token string taken from ``Authorization: Bearer <token>``

        Returns:
            Claims of the verified token

        Raises:
            VerificationError: on any signature, structure or validity failure
        """
        try:
            payload = jwt.decode(
                raw_credential,
                self.public_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={
                    "require": self._required_claims(),
                    "verify_aud": self.audience is not None,
                    "verify_iss": self.issuer is not None,
                },
            )
            return self._claims_from_payload(payload)
        except (jwt.PyJWTError, ValueError, TypeError, OverflowError) as e:
            logger.debug(f"Credential rejected: {type(e).__name__}: {e}")
            raise VerificationError("invalid credential") from e

    def _claims_from_payload(self, payload: Dict[str, Any]) -> Claims:
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise ValueError("subject claim must be a non-empty string")

        role = payload.get(self.role_claim)
        if not isinstance(role, str) or not role:
            raise ValueError(f"{self.role_claim} claim must be a non-empty string")

        return Claims(
            subject=subject,
            role=role,
            account=_optional_string(payload, self.account_claim),
            name=_optional_string(payload, "name"),
            expires_at=_timestamp(payload.get("exp")),
            issued_at=_timestamp(payload.get("iat")),
            not_before=_timestamp(payload.get("nbf"))
        )
