"""Caller identity resolved from a bearer token."""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str
    wallet_address: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def owns_wallet(self, address: Optional[str]) -> bool:
        return bool(address and self.wallet_address) and self.wallet_address.lower() == address.lower()

    def to_public_dict(self) -> dict[str, Any]:
        return {"id": self.user_id, "email": self.email, "walletAddress": self.wallet_address}
