"""Input validation for addresses, amounts, hashes and signing keys.

Every helper raises ``ValidationError`` (HTTP 400) and returns the
normalized value, so callers can write ``addr = validate_address(addr)``.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from cryptopay_core.exceptions import ValidationError
from cryptopay_core.models.enums import Currency

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
AMOUNT_RE = re.compile(r"^\d+(\.\d+)?$")
PRIVATE_KEY_RE = re.compile(r"^(0x)?[a-fA-F0-9]{64}$")

MAX_DESCRIPTION_LENGTH = 500
MAX_AMOUNT_DECIMALS = 18  # wei precision


def is_valid_address(value: Optional[str]) -> bool:
    return bool(value) and ADDRESS_RE.match(value) is not None


def validate_address(value: Optional[str], field: str = "address") -> str:
    """Validate a hex address and return it lowercased."""
    if not is_valid_address(value):
        raise ValidationError("Invalid wallet address format", field=field)
    return value.lower()


def validate_tx_hash(value: Optional[str], field: str = "transaction_hash") -> str:
    if not value or not TX_HASH_RE.match(value):
        raise ValidationError("Invalid transaction hash format", field=field)
    return value.lower()


def validate_amount(value: Union[str, int, Decimal, None], field: str = "amount") -> str:
    """
    Validate a positive decimal amount.

    Returns the canonical decimal string (trailing zeros kept as given,
    exponent notation rejected). More than 18 fractional digits cannot be
    represented in wei and is rejected.
    """
    if value is None:
        raise ValidationError("Amount is required", field=field)
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValidationError("Amount must be a finite number", field=field)
        text = format(value, "f")
    else:
        text = str(value).strip()
    if not AMOUNT_RE.match(text):
        raise ValidationError("Amount must be a positive decimal string", field=field)
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        raise ValidationError("Amount must be a positive decimal string", field=field)
    if parsed <= 0:
        raise ValidationError("Amount must be greater than 0", field=field)
    _, _, fraction = text.partition(".")
    if len(fraction) > MAX_AMOUNT_DECIMALS:
        raise ValidationError(
            f"Amount cannot have more than {MAX_AMOUNT_DECIMALS} decimal places", field=field
        )
    return text


def validate_currency(value: Union[str, Currency, None]) -> Currency:
    try:
        return Currency(value)
    except ValueError:
        allowed = ", ".join(c.value for c in Currency)
        raise ValidationError(f"Unsupported currency {value!r}; expected one of {allowed}", field="currency")


def validate_description(value: Optional[str], required: bool = True) -> Optional[str]:
    if value is None or not value.strip():
        if required:
            raise ValidationError("Description is required", field="description")
        return None
    value = value.strip()
    if len(value) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Description cannot exceed {MAX_DESCRIPTION_LENGTH} characters", field="description"
        )
    return value


def validate_gas_price(value: Union[str, int, Decimal, None]) -> Optional[Decimal]:
    """Validate an optional caller-supplied gas price in gwei."""
    if value is None or value == "":
        return None
    return Decimal(validate_amount(value, field="gasPrice"))


def validate_private_key(value: Optional[str]) -> str:
    """
    Check the shape of a raw signing key.

    The key is never echoed back in the error.
    """
    if not value or not PRIVATE_KEY_RE.match(value):
        raise ValidationError("Invalid private key format", field="privateKey")
    return value if value.startswith("0x") else f"0x{value}"


def validate_future(value: datetime, now: Optional[datetime] = None, field: str = "expiresAt") -> datetime:
    """Require a timestamp strictly in the future; naive values are read as UTC."""
    value = ensure_aware(value)
    now = now or datetime.now(timezone.utc)
    if value <= now:
        raise ValidationError("Expiration date must be in the future", field=field)
    return value


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
