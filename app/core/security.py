"""Handshake secret generation and hashing."""
import base64
import secrets

import bcrypt


def generate_auth_secret() -> str:
    """32 random bytes, base64 encoded (44 chars, below bcrypt's 72-byte limit)."""
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def get_secret_hash(secret: str) -> str:
    return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt()).decode("ascii")


def verify_secret(plain_secret: str, hashed_secret: str) -> bool:
    """Constant-time check of a provided secret against its stored bcrypt hash."""
    try:
        return bcrypt.checkpw(plain_secret.encode("utf-8"), hashed_secret.encode("ascii"))
    except ValueError:
        # malformed hash on record, or secret over the bcrypt length limit
        return False
