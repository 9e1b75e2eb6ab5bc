"""Gateway fee math and gas buffering.

All arithmetic is on integer base units: ``fee = amount * bps // 10000``
and ``net = amount - fee``, so ``net + fee == amount`` exactly and the
only rounding is truncation of the fee.
"""

from dataclasses import dataclass

from cryptopay_core.exceptions import ValidationError

BPS_DENOMINATOR = 10_000
DEFAULT_FEE_BPS = 100  # 1%
MAX_FEE_BPS = 1_000  # 10%
DEFAULT_GAS_BUFFER_PERCENT = 20


@dataclass(frozen=True)
class FeeSplit:
    amount: int
    fee: int
    net: int
    fee_bps: int


def validate_fee_bps(fee_bps: int) -> int:
    if fee_bps < 0:
        raise ValidationError("Fee cannot be negative", field="fee_bps")
    if fee_bps > MAX_FEE_BPS:
        raise ValidationError("Fee too high", field="fee_bps")
    return fee_bps


def calculate_fee(amount_wei: int, fee_bps: int = DEFAULT_FEE_BPS) -> int:
    validate_fee_bps(fee_bps)
    return amount_wei * fee_bps // BPS_DENOMINATOR


def split_amount(amount_wei: int, fee_bps: int = DEFAULT_FEE_BPS) -> FeeSplit:
    """Split a gateway payment into the recipient's net amount and the collector's fee."""
    if amount_wei <= 0:
        raise ValidationError("Amount must be greater than 0", field="amount")
    fee = calculate_fee(amount_wei, fee_bps)
    return FeeSplit(amount=amount_wei, fee=fee, net=amount_wei - fee, fee_bps=fee_bps)


def buffered_gas_limit(estimate: int, buffer_percent: int = DEFAULT_GAS_BUFFER_PERCENT) -> int:
    """Gas estimate plus a safety buffer, floored to an integer."""
    return estimate * (100 + buffer_percent) // 100
