#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all BTC amounts: every amount that
touches a wallet, a fee record or an escrow is quantized to satoshi granularity.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

SATOSHIS_PER_BTC = 100_000_000


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with satoshi precision"""

    CRYPTO_PRECISION = Decimal("0.00000001")  # 8 decimal places (1 satoshi)
    PERCENT_DIVISOR = Decimal("100")

    @classmethod
    def to_decimal(cls, value: Union[str, int, float, Decimal], context: str = "monetary") -> Decimal:
        """
        Convert a numeric value to Decimal.

        Floats go through str() to avoid binary precision artifacts. Raises
        ValueError for values that are not numbers so callers can surface a
        validation error instead of silently using zero.
        """
        if isinstance(value, bool) or value is None:
            raise ValueError(f"{context}: expected a number, got {value!r}")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError) as e:
                raise ValueError(f"{context}: '{value}' is not a valid number") from e

        if not decimal_value.is_finite():
            raise ValueError(f"{context}: '{value}' is not a finite number")
        return decimal_value

    @classmethod
    def quantize_crypto(cls, amount: Union[str, int, float, Decimal]) -> Decimal:
        """Quantize amount to crypto precision (8 decimal places)"""
        decimal_amount = cls.to_decimal(amount, "crypto")
        return decimal_amount.quantize(cls.CRYPTO_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def percentage_of(cls, amount: Union[str, int, float, Decimal], percentage: Union[str, int, float, Decimal]) -> Decimal:
        """Compute `percentage`% of `amount`, rounded to the satoshi"""
        decimal_amount = cls.to_decimal(amount, "amount")
        decimal_percentage = cls.to_decimal(percentage, "percentage")
        return cls.quantize_crypto(decimal_amount * decimal_percentage / cls.PERCENT_DIVISOR)

    @classmethod
    def to_satoshis(cls, amount: Union[str, int, float, Decimal]) -> int:
        """Convert a BTC amount to integer satoshis (rounded half up)"""
        return int(cls.quantize_crypto(amount) * SATOSHIS_PER_BTC)

    @classmethod
    def from_satoshis(cls, satoshis: int) -> Decimal:
        """Convert integer satoshis to a BTC Decimal"""
        return cls.quantize_crypto(Decimal(int(satoshis)) / SATOSHIS_PER_BTC)
