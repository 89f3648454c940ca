"""Escrow fee calculation utilities for deal creation"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict

from config import Config

logger = logging.getLogger(__name__)


class FeeCalculator:
    """Handles escrow fee quotes with decimal precision"""

    USD_PRECISION = Decimal("0.01")

    @classmethod
    def to_usd(cls, value: Any) -> Decimal:
        """Parse a monetary value into a 2-decimal Decimal, raising InvalidOperation on junk"""
        if isinstance(value, bool):
            raise InvalidOperation(f"Not a monetary amount: {value!r}")
        amount = Decimal(str(value))
        if not amount.is_finite():
            raise InvalidOperation(f"Not a monetary amount: {value!r}")
        return amount.quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def get_fee_percentage(cls) -> Decimal:
        return Decimal(str(Config.ESCROW_FEE_PERCENTAGE))

    @classmethod
    def calculate_escrow_fee(cls, channel_price: Decimal) -> Decimal:
        """
        Quote the escrow fee for a channel price.

        fee = max(price * percentage / 100, minimum fee), rounded half-up to cents.
        """
        price = cls.to_usd(channel_price)
        percentage_fee = (price * cls.get_fee_percentage() / Decimal("100")).quantize(
            cls.USD_PRECISION, rounding=ROUND_HALF_UP
        )
        minimum = cls.to_usd(Config.MIN_ESCROW_FEE)
        fee = max(percentage_fee, minimum)
        logger.debug(f"💰 FEE_QUOTE: price=${price} pct={cls.get_fee_percentage()}% fee=${fee}")
        return fee

    @classmethod
    def get_fee_breakdown(cls, channel_price: Decimal) -> Dict[str, Any]:
        """Fee quote as a JSON-ready breakdown"""
        price = cls.to_usd(channel_price)
        fee = cls.calculate_escrow_fee(price)
        return {
            "channel_price": str(price),
            "escrow_fee": str(fee),
            "fee_percentage": str(cls.get_fee_percentage()),
            "minimum_fee": str(cls.to_usd(Config.MIN_ESCROW_FEE)),
            "minimum_applied": fee > (price * cls.get_fee_percentage() / Decimal("100")),
        }
