from __future__ import annotations

import hmac
import os
from functools import lru_cache

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import PASSWORD_HASH_ITERATIONS, PASSWORD_SALT_BYTES

VERIFIER_SCHEME = "pbkdf2_sha256"


def derive_key(password: str, salt: bytes, iterations: int = PASSWORD_HASH_ITERATIONS) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
        backend=default_backend(),
    )
    return kdf.derive(password.encode("utf-8"))


def constant_time_compare(a: bytes, b: bytes) -> bool:
    return hmac.compare_digest(a, b)


def hash_password(password: str, iterations: int = PASSWORD_HASH_ITERATIONS) -> str:
    """Return a one-way verifier string: ``pbkdf2_sha256$<iterations>$<salt>$<digest>``."""
    salt = os.urandom(PASSWORD_SALT_BYTES)
    digest = derive_key(password, salt, iterations)
    return f"{VERIFIER_SCHEME}${iterations}${salt.hex()}${digest.hex()}"


def _parse_verifier(verifier: str) -> tuple[int, bytes, bytes] | None:
    parts = verifier.split("$")
    if len(parts) != 4 or parts[0] != VERIFIER_SCHEME:
        return None
    try:
        iterations = int(parts[1])
        salt = bytes.fromhex(parts[2])
        digest = bytes.fromhex(parts[3])
    except ValueError:
        return None
    if iterations <= 0 or not salt or not digest:
        return None
    return iterations, salt, digest


def verify_password(password: str, verifier: str) -> bool:
    """Check ``password`` against a stored verifier.

    The running time depends on the verifier's work factor, never on where the
    candidate first differs from the stored digest.
    """
    parsed = _parse_verifier(verifier)
    if parsed is None:
        return False
    iterations, salt, expected = parsed
    candidate = derive_key(password, salt, iterations)
    return constant_time_compare(candidate, expected)


@lru_cache(maxsize=1)
def dummy_verifier() -> str:
    # Verified against when no record exists so that lookup misses cost the
    # same as a wrong password.
    return hash_password(os.urandom(16).hex())
