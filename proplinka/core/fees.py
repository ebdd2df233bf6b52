"""
Tiered flat-fee calculator.

The platform charges a flat fee chosen by price bracket instead of the
percentage commission a traditional agent takes:

  0 - 500,000            = 4,500
  500,000 - 1,000,000    = 7,500
  1,000,000 - 1,500,000  = 9,500
  1,500,000 - 2,500,000  = 12,500
  2,500,000 - 5,000,000  = 18,000
  5,000,000 - 10,000,000 = 30,000
  10,000,000+            = 45,000

Upper bounds are inclusive. Savings compare the flat fee with the agent
commission for the property's country.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from proplinka.core.exceptions import ValidationError

WHOLE = Decimal("1")


class FeeCalculationError(ValidationError):
    """Raised for prices or fee tables the calculator cannot handle."""

    error_code = "invalid_fee_input"


@dataclass(frozen=True)
class FeeTier:
    """Price bracket. upper_bound of None marks the open-ended last tier."""

    upper_bound: Optional[Decimal]
    flat_fee: Decimal


@dataclass(frozen=True)
class CommissionRates:
    buyer: Decimal
    seller: Decimal

    @property
    def total(self) -> Decimal:
        return self.buyer + self.seller


@dataclass(frozen=True)
class SavingsBreakdown:
    property_price: Decimal
    country_code: str
    currency: str
    currency_symbol: str
    commission_rate: Decimal
    buyer_agent_fee: Decimal
    seller_agent_fee: Decimal
    traditional_agent_fee: Decimal
    platform_fee: Decimal
    total_savings: Decimal
    savings_percentage: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "property_price": self.property_price,
            "country_code": self.country_code,
            "currency": self.currency,
            "currency_symbol": self.currency_symbol,
            "commission_rate": self.commission_rate,
            "buyer_agent_fee": self.buyer_agent_fee,
            "seller_agent_fee": self.seller_agent_fee,
            "traditional_agent_fee": self.traditional_agent_fee,
            "platform_fee": self.platform_fee,
            "total_savings": self.total_savings,
            "savings_percentage": self.savings_percentage,
        }


FEE_TIERS: List[FeeTier] = [
    FeeTier(Decimal("500000"), Decimal("4500")),
    FeeTier(Decimal("1000000"), Decimal("7500")),
    FeeTier(Decimal("1500000"), Decimal("9500")),
    FeeTier(Decimal("2500000"), Decimal("12500")),
    FeeTier(Decimal("5000000"), Decimal("18000")),
    FeeTier(Decimal("10000000"), Decimal("30000")),
    FeeTier(None, Decimal("45000")),
]

DEFAULT_COUNTRY = "ZA"

COMMISSION_RATES: Dict[str, CommissionRates] = {
    "ZA": CommissionRates(buyer=Decimal("0.03"), seller=Decimal("0.03")),
    "NA": CommissionRates(buyer=Decimal("0.025"), seller=Decimal("0.025")),
}

CURRENCIES: Dict[str, Tuple[str, str]] = {
    "ZA": ("ZAR", "R"),
    "NA": ("NAD", "N$"),
}


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        # str() keeps floats like 0.1 from dragging in binary noise
        return Decimal(str(value))
    except (ArithmeticError, ValueError) as e:
        raise FeeCalculationError(f"Invalid price: {value!r}") from e


def _round_whole(value: Decimal) -> Decimal:
    return value.quantize(WHOLE, rounding=ROUND_HALF_UP)


def normalize_country(country_code: Optional[str]) -> str:
    """Uppercase a country code, falling back to ZA for unsupported ones."""
    code = (country_code or DEFAULT_COUNTRY).upper()
    return code if code in COMMISSION_RATES else DEFAULT_COUNTRY


def currency_for(country_code: Optional[str]) -> Tuple[str, str]:
    """Return (currency, symbol) for a country."""
    return CURRENCIES[normalize_country(country_code)]


def commission_rates_for(country_code: Optional[str]) -> CommissionRates:
    """Return the traditional agent commission rates for a country."""
    return COMMISSION_RATES[normalize_country(country_code)]


def flat_fee_for_price(price: Any, tiers: Sequence[FeeTier] = FEE_TIERS) -> FeeTier:
    """
    Find the fee tier for a property price.

    Args:
        price: Property price in whole currency units
        tiers: Ascending fee table; the last tier catches everything above

    Returns:
        FeeTier: First tier whose upper bound is >= price

    Raises:
        FeeCalculationError: If the price is negative or the table is empty
    """
    if not tiers:
        raise FeeCalculationError("Fee table is empty")

    amount = _to_decimal(price)
    if not amount.is_finite():
        raise FeeCalculationError(f"Invalid price: {price!r}")
    if amount < 0:
        raise FeeCalculationError("Price cannot be negative")

    for tier in tiers:
        if tier.upper_bound is None or amount <= tier.upper_bound:
            return tier
    return tiers[-1]


def platform_fee_for_price(price: Any) -> Decimal:
    """Flat platform fee for a price."""
    return flat_fee_for_price(price).flat_fee


def calculate_savings(
    price: Any,
    country_code: Optional[str] = DEFAULT_COUNTRY,
    tiers: Sequence[FeeTier] = FEE_TIERS,
) -> SavingsBreakdown:
    """
    Compare the flat platform fee with traditional agent commission.

    savings = commission_rate * price - flat_fee
    savings_percentage = savings / (commission_rate * price)

    Savings are negative when the flat fee exceeds the commission, which
    happens for very cheap properties. The percentage is 0 when the
    commission is 0.

    Args:
        price: Property price in whole currency units
        country_code: ISO country code, unsupported codes fall back to ZA
        tiers: Fee table

    Returns:
        SavingsBreakdown: Fee and savings figures

    Raises:
        FeeCalculationError: If the price is invalid
    """
    amount = _to_decimal(price)
    tier = flat_fee_for_price(amount, tiers)
    country = normalize_country(country_code)
    rates = commission_rates_for(country)
    currency, symbol = currency_for(country)

    traditional = rates.total * amount
    savings = traditional - tier.flat_fee
    percentage = savings / traditional if traditional else Decimal("0")

    return SavingsBreakdown(
        property_price=amount,
        country_code=country,
        currency=currency,
        currency_symbol=symbol,
        commission_rate=rates.total,
        buyer_agent_fee=_round_whole(rates.buyer * amount),
        seller_agent_fee=_round_whole(rates.seller * amount),
        traditional_agent_fee=_round_whole(traditional),
        platform_fee=tier.flat_fee,
        total_savings=_round_whole(savings),
        savings_percentage=percentage,
    )


def split_success_fee(
    flat_fee: Any,
    buyer_share: Any = Decimal("0.5"),
    seller_share: Any = Decimal("0.5"),
) -> Dict[str, Decimal]:
    """
    Split the flat fee into the buyer's and the seller's success fee.

    Args:
        flat_fee: Platform fee for the agreed price
        buyer_share: Fraction paid by the buyer
        seller_share: Fraction paid by the seller

    Returns:
        Dict[str, Decimal]: {"buyer": amount, "seller": amount}

    Raises:
        FeeCalculationError: If the shares are out of range
    """
    fee = _to_decimal(flat_fee)
    buyer = _to_decimal(buyer_share)
    seller = _to_decimal(seller_share)

    if fee < 0:
        raise FeeCalculationError("Fee cannot be negative")
    if not (0 <= buyer <= 1 and 0 <= seller <= 1):
        raise FeeCalculationError("Fee shares must be between 0 and 1")
    if buyer + seller > 1:
        raise FeeCalculationError("Fee shares cannot exceed 100% of the fee")

    return {
        "buyer": _round_whole(fee * buyer),
        "seller": _round_whole(fee * seller),
    }


def format_currency(amount: Decimal, symbol: str) -> str:
    rounded = _round_whole(amount)
    sign = "-" if rounded < 0 else ""
    return f"{sign}{symbol}{abs(rounded):,}"


def format_savings_display(breakdown: SavingsBreakdown) -> Dict[str, str]:
    """Human readable strings for a savings breakdown."""
    symbol = breakdown.currency_symbol
    percentage = _round_whole(breakdown.savings_percentage * 100)
    return {
        "property_price": format_currency(breakdown.property_price, symbol),
        "traditional_fee": format_currency(breakdown.traditional_agent_fee, symbol),
        "platform_fee": format_currency(breakdown.platform_fee, symbol),
        "savings": format_currency(breakdown.total_savings, symbol),
        "savings_percentage": f"{percentage}%",
    }
