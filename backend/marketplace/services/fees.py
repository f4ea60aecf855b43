"""Fee calculator.

Pure functions over an explicit ``FeeSettings`` snapshot. Nothing here reads
configuration on its own or touches storage, so the same functions serve live
payments, ledger recomputes and the admin preview.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from marketplace.models import (
    EarningsBreakdown,
    FeePreview,
    FeeSettings,
    PaymentBreakdown,
    WithdrawalBreakdown,
)

HUNDRED = Decimal("100")


def platform_fee(settings: FeeSettings, amount: Decimal) -> Decimal:
    return amount * settings.platform_fee_percentage / HUNDRED


def processing_fee(settings: FeeSettings, amount: Decimal) -> Decimal:
    return amount * settings.processing_fee_percentage / HUNDRED + settings.fixed_processing_fee


def payment_breakdown(settings: FeeSettings, base_amount: Decimal, include_processing: bool = True) -> PaymentBreakdown:
    """Platform fee is charged first; processing applies to base plus platform fee."""
    platform = platform_fee(settings, base_amount)
    processing = processing_fee(settings, base_amount + platform) if include_processing else Decimal("0")
    return PaymentBreakdown(
        base_amount=base_amount,
        platform_fee=platform,
        processing_fee=processing,
        total_fees=platform + processing,
        total_amount=base_amount + platform + processing,
    )


def commission_percentage(settings: FeeSettings, user_type: str) -> Decimal:
    if user_type == "inspector":
        return settings.inspector_commission_percentage
    return settings.provider_commission_percentage


def earnings(settings: FeeSettings, payment_amount: Decimal, user_type: str = "provider") -> EarningsBreakdown:
    percentage = commission_percentage(settings, user_type)
    earned = payment_amount * percentage / HUNDRED
    return EarningsBreakdown(
        payment_amount=payment_amount,
        commission_percentage=percentage,
        earnings=earned,
        platform_share=payment_amount - earned,
    )


def withdrawal_fee(settings: FeeSettings, amount: Decimal, method: str) -> Decimal:
    method_fees = settings.withdrawal_fees.get(method)
    if method_fees is None:
        return Decimal("0")
    return amount * method_fees.percentage / HUNDRED + method_fees.fixed


def fee_preview(
    settings: FeeSettings,
    amount: Decimal,
    user_type: str = "provider",
    withdrawal_method: Optional[str] = None,
) -> FeePreview:
    earnings_breakdown = earnings(settings, amount, user_type)
    withdrawal_breakdown = None
    if withdrawal_method:
        fee = withdrawal_fee(settings, earnings_breakdown.earnings, withdrawal_method)
        withdrawal_breakdown = WithdrawalBreakdown(
            method=withdrawal_method,
            fee=fee,
            net_amount=earnings_breakdown.earnings - fee,
        )
    return FeePreview(
        input_amount=amount,
        user_type=user_type,  # type: ignore[arg-type]
        settings_version=settings.version,
        payment_breakdown=payment_breakdown(settings, amount),
        earnings_breakdown=earnings_breakdown,
        withdrawal_breakdown=withdrawal_breakdown,
    )


def to_minor_units(amount: Decimal) -> int:
    return int((amount * HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
