"""
Billing enumerations.
"""

import enum


class PaymentStatus(str, enum.Enum):
    """Driver payment status enumeration."""
    PENDING = "pending"  # Computed, waiting for approval
    APPROVED = "approved"  # Approved, waiting for payment
    PAID = "paid"  # Payment processed
    CANCELLED = "cancelled"


class PaymentMethod(str, enum.Enum):
    """How a driver payment was settled."""
    PIX = "pix"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"
    OTHER = "other"
