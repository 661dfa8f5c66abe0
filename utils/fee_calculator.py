"""Fee and payout calculation for escrow settlement paths"""

import logging
from decimal import Decimal
from typing import NamedTuple, Optional, Union
from config import Config
from models import FeeType, Ruling
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class PayoutPlan(NamedTuple):
    """
    How an escrowed amount is split when an escrow settles.

    buyer_credit + seller_credit + fee always equals the escrowed amount.
    """

    buyer_credit: Decimal
    seller_credit: Decimal
    fee: Decimal
    fee_type: Optional[str] = None
    fee_percentage: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.buyer_credit + self.seller_credit + self.fee


class FeeCalculator:
    """
    Handles all fee-related calculations with satoshi precision.

    Pure computation: nothing here touches the database. Every amount is
    rounded ROUND_HALF_UP to 1e-8 BTC and the remainder always lands with a
    party, so the parts of a plan add back to the escrowed amount exactly.
    """

    CRYPTO_PRECISION = MonetaryDecimal.CRYPTO_PRECISION

    @classmethod
    def get_escrow_fee_percentage(cls) -> Decimal:
        """Escrow fee percentage charged on the normal acceptance path"""
        return Decimal(str(Config.ESCROW_FEE_PERCENTAGE))

    @classmethod
    def get_dispute_fee_percentage(cls) -> Decimal:
        """Dispute fee percentage charged on the arbitrated resolution path"""
        return Decimal(str(Config.DISPUTE_FEE_PERCENTAGE))

    @classmethod
    def calculate_escrow_fee(cls, amount: Union[Decimal, str]) -> Decimal:
        return MonetaryDecimal.percentage_of(amount, cls.get_escrow_fee_percentage())

    @classmethod
    def calculate_dispute_fee(cls, share: Union[Decimal, str]) -> Decimal:
        return MonetaryDecimal.percentage_of(share, cls.get_dispute_fee_percentage())

    @classmethod
    def plan_release(cls, amount: Union[Decimal, str]) -> PayoutPlan:
        """Acceptance (manual or automatic): seller receives amount minus the escrow fee"""
        escrowed = MonetaryDecimal.quantize_crypto(amount)
        fee = cls.calculate_escrow_fee(escrowed)
        plan = PayoutPlan(
            buyer_credit=ZERO,
            seller_credit=escrowed - fee,
            fee=fee,
            fee_type=FeeType.ESCROW_FEE.value,
            fee_percentage=cls.get_escrow_fee_percentage(),
        )
        logger.debug(f"💱 RELEASE_PLAN: amount={escrowed} seller={plan.seller_credit} fee={fee}")
        return plan

    @classmethod
    def plan_refund(cls, amount: Union[Decimal, str]) -> PayoutPlan:
        """Return, refund and expiry: buyer is made whole, no fee"""
        escrowed = MonetaryDecimal.quantize_crypto(amount)
        return PayoutPlan(buyer_credit=escrowed, seller_credit=ZERO, fee=ZERO)

    @classmethod
    def plan_resolution(cls, amount: Union[Decimal, str], ruling: Union[Ruling, str], split_percentage: int) -> PayoutPlan:
        """
        Arbitrated resolution.

        The ruled party receives `amount × split/100` minus the dispute fee on
        that share. The counterparty receives the remainder of the escrow with
        no fee.

        Rounding happens in two steps: the share is rounded to the satoshi,
        then the fee is rounded on that share, and the ruled credit is their
        difference. This can be 1 satoshi below `round(amount × split/100 × 0.97)`
        (a 50 sat share pays a 2 sat fee and nets 48, not 49). The fee row then
        matches what was taken from the ruled party to the satoshi.
        """
        if not 1 <= int(split_percentage) <= 100:
            raise ValueError(f"split_percentage must be between 1 and 100, got {split_percentage}")

        ruling_value = ruling.value if isinstance(ruling, Ruling) else Ruling(ruling).value
        escrowed = MonetaryDecimal.quantize_crypto(amount)
        share = MonetaryDecimal.percentage_of(escrowed, split_percentage)
        fee = cls.calculate_dispute_fee(share)
        ruled_credit = share - fee
        counterparty_credit = escrowed - share

        if ruling_value == Ruling.BUYER.value:
            buyer_credit, seller_credit = ruled_credit, counterparty_credit
        else:
            buyer_credit, seller_credit = counterparty_credit, ruled_credit

        plan = PayoutPlan(
            buyer_credit=buyer_credit,
            seller_credit=seller_credit,
            fee=fee,
            fee_type=FeeType.DISPUTE_FEE.value,
            fee_percentage=cls.get_dispute_fee_percentage(),
        )
        logger.debug(
            f"⚖️ RESOLUTION_PLAN: amount={escrowed} ruling={ruling_value} split={split_percentage}% "
            f"buyer={buyer_credit} seller={seller_credit} fee={fee}"
        )
        return plan
