"""Tests for input validation helpers."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from cryptopay_core.exceptions import ValidationError
from cryptopay_core.models import Currency
from cryptopay_core.validators import (
    validate_address,
    validate_amount,
    validate_currency,
    validate_description,
    validate_future,
    validate_gas_price,
    validate_private_key,
    validate_tx_hash,
)


class TestAddresses:

    def test_lowercases(self):
        assert validate_address("0x" + "AB" * 20) == "0x" + "ab" * 20

    @pytest.mark.parametrize("value", [None, "", "0x123", "ab" * 20, "0x" + "zz" * 20, "0x" + "ab" * 21])
    def test_rejects(self, value):
        with pytest.raises(ValidationError, match="Invalid wallet address format") as exc:
            validate_address(value, field="toAddress")
        assert exc.value.details["field"] == "toAddress"

    def test_tx_hash(self):
        assert validate_tx_hash("0x" + "AA" * 32) == "0x" + "aa" * 32
        with pytest.raises(ValidationError):
            validate_tx_hash("0x" + "aa" * 20)


class TestAmounts:

    @pytest.mark.parametrize("value,expected", [
        ("1.50", "1.50"),
        (3, "3"),
        (Decimal("0.000000000000000001"), "0.000000000000000001"),
        (" 12 ", "12"),
    ])
    def test_accepts(self, value, expected):
        assert validate_amount(value) == expected

    @pytest.mark.parametrize("value", ["0", "0.0", "-1", "1e18", "abc", "", None, Decimal("NaN")])
    def test_rejects(self, value):
        with pytest.raises(ValidationError):
            validate_amount(value)

    @pytest.mark.parametrize("value", ["0.0000000000000000001", "1.1234567890123456789", Decimal("1E-19")])
    def test_rejects_sub_wei_precision(self, value):
        with pytest.raises(ValidationError, match="more than 18 decimal places") as exc:
            validate_amount(value)
        assert exc.value.details["field"] == "amount"

    def test_gas_price_optional(self):
        assert validate_gas_price(None) is None
        assert validate_gas_price("") is None
        assert validate_gas_price("35") == Decimal("35")
        with pytest.raises(ValidationError) as exc:
            validate_gas_price("-2")
        assert exc.value.details["field"] == "gasPrice"


class TestOtherFields:

    def test_currency(self):
        assert validate_currency("CPX") is Currency.CPX
        with pytest.raises(ValidationError, match="Unsupported currency"):
            validate_currency("BTC")

    def test_description(self):
        assert validate_description("  coffee  ") == "coffee"
        assert validate_description("   ", required=False) is None
        with pytest.raises(ValidationError, match="Description is required"):
            validate_description("")
        with pytest.raises(ValidationError, match="cannot exceed 500"):
            validate_description("x" * 501)

    def test_private_key(self):
        key = "ab" * 32
        assert validate_private_key(key) == "0x" + key
        assert validate_private_key("0x" + key) == "0x" + key

    def test_private_key_not_echoed(self):
        secret = "0x" + "ab" * 31
        with pytest.raises(ValidationError) as exc:
            validate_private_key(secret)
        assert secret not in str(exc.value)
        assert secret not in str(exc.value.to_dict())

    def test_future(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        naive = datetime(2026, 1, 2)
        assert validate_future(naive, now=now).tzinfo is timezone.utc
        with pytest.raises(ValidationError, match="must be in the future"):
            validate_future(now - timedelta(seconds=1), now=now)
        with pytest.raises(ValidationError):
            validate_future(now, now=now)
