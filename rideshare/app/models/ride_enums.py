"""
Ride and booking enumerations.
"""

import enum


class RideStatus(str, enum.Enum):
    """Ride status enumeration."""
    ACTIVE = "active"  # Open for booking
    FULL = "full"  # No seats left
    CANCELLED = "cancelled"  # Cancelled by driver, terminal
    AWAITING_CONFIRMATION = "awaiting_confirmation"  # Driver finished, waiting for confirmations
    COMPLETED = "completed"  # Everyone confirmed


class BookingStatus(str, enum.Enum):
    """Booking status enumeration."""
    PENDING = "pending"  # Requested, waiting for the driver
    CONFIRMED = "confirmed"  # Holds seats
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    COMPLETED = "completed"


class BookingType(str, enum.Enum):
    """How bookings on a ride are accepted."""
    DIRECT = "direct"  # Confirmed immediately
    REQUEST = "request"  # Driver accepts or rejects


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    E_PAY = "e-pay"


# Statuses that hold ride capacity or may still do so
ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)

# Ride statuses whose active/full value is derived from available_seats
OPEN_RIDE_STATUSES = (RideStatus.ACTIVE, RideStatus.FULL)
