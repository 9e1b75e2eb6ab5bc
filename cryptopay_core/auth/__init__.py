"""Authentication: password hashing, JWT tokens and identity resolution."""

from .authenticator import Authenticator
from .security import create_access_token, decode_access_token, hash_password, verify_password

__all__ = [
    "Authenticator",
    "create_access_token",
    "decode_access_token",
    "hash_password",
    "verify_password",
]
