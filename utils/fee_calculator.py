"""Fee calculation utilities for escrow releases"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import NamedTuple

logger = logging.getLogger(__name__)


class FeeBreakdown(NamedTuple):
    """How a released gross amount divides between freelancer and platform"""

    gross_amount: Decimal
    service_fee: Decimal
    tax: Decimal
    net_amount: Decimal

    @property
    def platform_total(self) -> Decimal:
        return self.service_fee + self.tax


class FeeCalculator:
    """Handles all fee-related calculations with mathematical precision"""

    CURRENCY_PRECISION = Decimal("0.01")

    @classmethod
    def quantize(cls, amount) -> Decimal:
        return Decimal(str(amount)).quantize(cls.CURRENCY_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def release_breakdown(cls, gross_amount, fee_rate, tax_rate) -> FeeBreakdown:
        """
        Split a freelancer-bound amount into service fee, tax on that fee, and net payout.

        Example: 10,000 at 6% with 16% VAT -> fee 600.00, tax 96.00, net 9,304.00
        """
        gross = cls.quantize(gross_amount)
        rate = Decimal(str(fee_rate))
        vat = Decimal(str(tax_rate))
        if gross < 0 or rate < 0 or vat < 0:
            raise ValueError("Amounts and rates must be non-negative")

        service_fee = cls.quantize(gross * rate)
        tax = cls.quantize(service_fee * vat)
        net = gross - service_fee - tax
        if net < 0:
            raise ValueError(f"Fees {service_fee + tax} exceed released amount {gross}")

        logger.debug(f"💰 FEE_BREAKDOWN: gross={gross} fee={service_fee} tax={tax} net={net}")
        return FeeBreakdown(gross_amount=gross, service_fee=service_fee, tax=tax, net_amount=net)

    @classmethod
    def split_portions(cls, amount, freelancer_ratio) -> tuple:
        """
        Divide an escrow between freelancer and client.
        The freelancer share is rounded; the client receives the exact remainder so
        the two portions always sum to the escrow amount.
        """
        total = cls.quantize(amount)
        ratio = Decimal(str(freelancer_ratio))
        if ratio < 0 or ratio > 1:
            raise ValueError(f"Split ratio must be within [0, 1], got {ratio}")
        freelancer_share = cls.quantize(total * ratio)
        return freelancer_share, total - freelancer_share
