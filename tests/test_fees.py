"""Tests for gateway fee math and gas buffering."""

import pytest

from cryptopay_core.chains.fees import (
    MAX_FEE_BPS,
    buffered_gas_limit,
    calculate_fee,
    split_amount,
    validate_fee_bps,
)
from cryptopay_core.exceptions import ValidationError


class TestFeeSplit:
    """Tests for splitting a payment into net amount and fee."""

    def test_default_rate(self):
        """Test 1% of 100 tokens goes to the collector."""
        split = split_amount(100 * 10**18)
        assert split.fee == 10**18
        assert split.net == 99 * 10**18

    @pytest.mark.parametrize("amount", [1, 99, 101, 10**18 + 7, 123456789123456789123])
    @pytest.mark.parametrize("bps", [0, 1, 100, 250, MAX_FEE_BPS])
    def test_conservation(self, amount, bps):
        """Test the net amount and fee always add up to the payment."""
        split = split_amount(amount, bps)
        assert split.net + split.fee == amount
        assert split.fee == amount * bps // 10_000

    def test_fee_truncates(self):
        assert calculate_fee(99, 100) == 0

    def test_rejects_non_positive_amount(self):
        with pytest.raises(ValidationError):
            split_amount(0)

    def test_rejects_high_fee(self):
        with pytest.raises(ValidationError, match="Fee too high"):
            validate_fee_bps(MAX_FEE_BPS + 1)

    def test_rejects_negative_fee(self):
        with pytest.raises(ValidationError, match="negative"):
            validate_fee_bps(-1)


class TestGasBuffer:

    def test_twenty_percent(self):
        assert buffered_gas_limit(21_000) == 25_200

    def test_floors(self):
        assert buffered_gas_limit(52_001) == 62_401

    def test_custom_buffer(self):
        assert buffered_gas_limit(100_000, 50) == 150_000
