"""
Shared fixtures: throwaway RSA key pairs, token minting and in-memory ledgers
"""

from datetime import datetime, timezone, timedelta

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient

from family_bank.api import create_app
from family_bank.api.auth import LedgerSystem
from family_bank.config import FamilyBankConfig
from family_bank.identity import IdentityVerifier
from family_bank.storage import InMemoryStorage


ROLE_CLAIM = "https://jan.monster/role"
ACCOUNT_CLAIM = "https://jan.monster/account"

_UNSET = object()


def _generate_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def signing_key():
    """Private key whose public half the service trusts"""
    return _generate_key()


@pytest.fixture(scope="session")
def foreign_key():
    """Private key the service does not trust"""
    return _generate_key()


@pytest.fixture(scope="session")
def public_key_pem(signing_key):
    return signing_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()


@pytest.fixture
def make_token(signing_key):
    """Factory minting RS256 tokens; pass a claim as None to leave it out"""

    def _make(role="parent", subject="auth0|parent", key=None, expires_in=timedelta(hours=1),
              account=_UNSET, algorithm="RS256", **claims):
        now = datetime.now(timezone.utc)
        payload = {
            "sub": subject,
            ROLE_CLAIM: role,
            "iat": now,
            "exp": now + expires_in if expires_in is not None else None,
        }
        if account is not _UNSET:
            payload[ACCOUNT_CLAIM] = account
        payload.update(claims)
        payload = {k: v for k, v in payload.items() if v is not None}
        return jwt.encode(payload, key if key is not None else signing_key, algorithm=algorithm)

    return _make


@pytest.fixture
def verifier(signing_key):
    return IdentityVerifier(signing_key.public_key())


@pytest.fixture
def storage():
    """In-memory ledger with account 42 holding 100"""
    storage = InMemoryStorage()
    storage.create_account(42, 100)
    return storage


@pytest.fixture
def config(public_key_pem):
    return FamilyBankConfig(
        database_url="memory://",
        jwt_public_key=public_key_pem,
        cors_allowed_origins=["https://jan.monster"],
        ping_path="ping-7f3a",
        log_level="DEBUG",
    )


@pytest.fixture
def system(config, storage):
    return LedgerSystem(config, storage=storage)


@pytest.fixture
def client(config, system):
    return TestClient(create_app(config, system))


@pytest.fixture
def parent_headers(make_token):
    return {"Authorization": f"Bearer {make_token(role='parent')}"}


@pytest.fixture
def child_headers(make_token):
    return {"Authorization": f"Bearer {make_token(role='child', subject='auth0|child')}"}
