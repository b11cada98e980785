"""
Enigmo - Relay bearer credential.

An operator may require clients to present a shared credential in their
``auth`` envelope. Only its Argon2id hash is kept in configuration
(``auth.credential_hash``); an empty hash disables the check.

Uses argon2-cffi (MIT License).
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from .constants import ARGON2_MEMORY_COST, ARGON2_PARALLELISM, ARGON2_TIME_COST

logger = logging.getLogger(__name__)


def make_hasher() -> PasswordHasher:
    return PasswordHasher(
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        type=Type.ID,
    )


def hash_credential(secret: str, hasher: Optional[PasswordHasher] = None) -> str:
    """Hash a credential for ``auth.credential_hash``."""
    return (hasher or make_hasher()).hash(secret)


class CredentialVerifier:
    """Checks bearer credentials against the configured hash."""

    def __init__(self, credential_hash: str = "", hasher: Optional[PasswordHasher] = None):
        self.credential_hash = credential_hash or ""
        self._hasher = hasher or make_hasher()

    @property
    def required(self) -> bool:
        return bool(self.credential_hash)

    def verify(self, credential: Optional[str]) -> bool:
        """
        Check a presented credential.

        Always True when no hash is configured. A malformed configured hash
        rejects every credential.
        """
        if not self.required:
            return True
        if not credential:
            return False
        try:
            return self._hasher.verify(self.credential_hash, credential)
        except VerifyMismatchError:
            return False
        except InvalidHashError:
            logger.error("Configured auth.credential_hash is not a valid Argon2 hash")
            return False
        except VerificationError as e:
            logger.warning(f"Credential verification error: {e}")
            return False


def main() -> int:
    """Entry point for ``enigmo-hash-credential``."""
    parser = argparse.ArgumentParser(description="Hash a relay bearer credential for auth.credential_hash")
    parser.add_argument("--stdin", action="store_true", help="Read the credential from standard input")
    args = parser.parse_args()

    if args.stdin:
        secret = sys.stdin.readline().rstrip("\n")
    else:
        secret = getpass.getpass("Credential: ")
        if secret != getpass.getpass("Repeat credential: "):
            print("Credentials do not match", file=sys.stderr)
            return 1

    if not secret:
        print("Credential must not be empty", file=sys.stderr)
        return 1

    print(hash_credential(secret))
    return 0
