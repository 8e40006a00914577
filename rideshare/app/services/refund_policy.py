"""
Refund quote for passenger cancellations.

The refundable share depends on how much of the window between booking
and departure has already elapsed when the booking is cancelled.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

# (max elapsed fraction, refund percentage), checked in order
REFUND_TIERS = (
    (0.30, 100),
    (0.50, 70),
    (0.70, 50),
)

CENTS = Decimal("0.01")


@dataclass
class RefundQuote:
    percentage: int
    amount: Decimal
    total: Decimal

    def as_dict(self) -> dict:
        return {
            "percentage": self.percentage,
            "amount": str(self.amount),
            "total": str(self.total),
        }


def refund_percentage(booked_at: datetime, departure_time: datetime, now: datetime) -> int:
    if now >= departure_time:
        return 0

    window = (departure_time - booked_at).total_seconds()
    if window <= 0:
        return 0

    elapsed = max(0.0, (now - booked_at).total_seconds()) / window
    for max_elapsed, percentage in REFUND_TIERS:
        if elapsed <= max_elapsed:
            return percentage
    return 0


def quote_refund(seats: int, price_per_seat, booked_at: datetime, departure_time: datetime, now: datetime = None) -> RefundQuote:
    now = now or datetime.utcnow()
    total = (Decimal(str(price_per_seat)) * seats).quantize(CENTS)
    percentage = refund_percentage(booked_at, departure_time, now)
    amount = (total * percentage / 100).quantize(CENTS, rounding=ROUND_HALF_UP)
    return RefundQuote(percentage=percentage, amount=amount, total=total)
