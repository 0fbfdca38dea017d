"""
HPoints Ledger & Workout Validation

This module provides:
- Append-only HPoints ledger with FIFO consumption and lazy expiration
- Balance summaries derived from ledger entries on demand
- Workout validation lifecycle: pending → approved / rejected
- Atomic rewards redemption with stock, ledger and record in one transaction
- FastAPI surface with a single {success, data} response envelope
"""

from .models import (
    LedgerSource,
    WorkoutStatus,
    RedemptionStatus,
    LedgerEntry,
    BalanceSummary,
    Workout,
    Product,
    Redemption,
)
from .service import LedgerService
from .validation import WorkoutValidationService
from .products import ProductService
from .redemptions import RedemptionService

__all__ = [
    "LedgerSource",
    "WorkoutStatus",
    "RedemptionStatus",
    "LedgerEntry",
    "BalanceSummary",
    "Workout",
    "Product",
    "Redemption",
    "LedgerService",
    "WorkoutValidationService",
    "ProductService",
    "RedemptionService",
]
