"""
Unit tests for bearer credential hashing and verification.
"""

import pytest
from argon2 import PasswordHasher

from enigmo.credentials import CredentialVerifier, hash_credential


@pytest.fixture
def hasher():
    # Cheap parameters keep the tests fast
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


def test_no_hash_accepts_everything():
    verifier = CredentialVerifier("")

    assert verifier.required is False
    assert verifier.verify(None) is True
    assert verifier.verify("anything") is True


def test_hash_and_verify(hasher):
    verifier = CredentialVerifier(hash_credential("s3cret", hasher), hasher=hasher)

    assert verifier.required is True
    assert verifier.verify("s3cret") is True
    assert verifier.verify("wrong") is False
    assert verifier.verify("") is False
    assert verifier.verify(None) is False


def test_malformed_hash_rejects(hasher):
    verifier = CredentialVerifier("not-an-argon2-hash", hasher=hasher)

    assert verifier.verify("s3cret") is False
