from datetime import date as date_type, datetime
from enum import Enum
from typing import Generic, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake case in Python, camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class UserRole(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"


class LedgerSource(str, Enum):
    WORKOUT = "workout"
    CHALLENGE = "challenge"
    REDEMPTION = "redemption"
    MANUAL_ADMIN = "manual_admin"
    EXPIRATION = "expiration"
    REFUND = "refund"


class WorkoutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TrainingZone(str, Enum):
    BASE = "base"
    PACE = "pace"
    INTERVAL = "interval"
    LONG_RUN = "long_run"
    RECOVERY = "recovery"
    STRENGTH = "strength"


class WorkoutKind(str, Enum):
    INDIVIDUAL = "individual"
    TOGETHER = "together"
    RACE = "race"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


# --------------------------------------------------------------------------- #
# Ledger
# --------------------------------------------------------------------------- #


class User(CamelModel):
    id: UUID
    name: str
    email: str
    role: UserRole = UserRole.MEMBER


class LedgerEntry(CamelModel):
    id: UUID
    user_id: UUID
    points: int
    reason: str
    source: LedgerSource
    created_at: datetime
    expires_at: Optional[datetime] = None
    reference_id: Optional[UUID] = None
    source_entry_id: Optional[UUID] = None
    created_by: Optional[UUID] = None
    sequence: int


class BalanceSummary(CamelModel):
    balance: int = 0
    total_earned: int = 0
    total_redeemed: int = 0
    expiring: int = 0
    next_expiration_date: Optional[datetime] = None


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class LedgerHistoryResponse(CamelModel):
    user_id: UUID
    entries: list[LedgerEntry]
    pagination: Pagination


class ExpirationRunResult(CamelModel):
    expired_entries: int = 0
    points_expired: int = 0
    affected_users: list[UUID] = Field(default_factory=list)


class AdjustPointsRequest(CamelModel):
    user_id: UUID
    points: int = Field(..., description="Signed amount, never zero")
    reason: str = Field(..., description="At least 10 characters")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "userId": "550e8400-e29b-41d4-a716-446655440000",
            "points": 50,
            "reason": "Bonus for volunteering at the 10k race",
        }
    })


# --------------------------------------------------------------------------- #
# Workouts
# --------------------------------------------------------------------------- #


class WorkoutShares(CamelModel):
    strava: bool = False
    instagram: bool = False
    whatsapp: bool = False


class SubmitWorkoutRequest(CamelModel):
    date: date_type
    type: TrainingZone
    kind: WorkoutKind = WorkoutKind.INDIVIDUAL
    distance_km: float
    duration_seconds: int
    photo_ref: Optional[str] = None
    shares: WorkoutShares = Field(default_factory=WorkoutShares)
    notes: str = ""
    instagram_story_link: Optional[str] = None


class ApproveWorkoutRequest(CamelModel):
    points: Optional[int] = Field(default=None, gt=0, description="Overrides the points policy")
    podium_position: Optional[int] = Field(default=None, ge=1, le=3)


class RejectWorkoutRequest(CamelModel):
    reason: str = Field(..., description="Shown to the athlete")


class Workout(CamelModel):
    id: UUID
    user_id: UUID
    date: date_type
    type: TrainingZone
    kind: WorkoutKind = WorkoutKind.INDIVIDUAL
    distance_km: float
    duration_seconds: int
    pace_seconds_per_km: int = 0
    photo_ref: str
    shares: WorkoutShares = Field(default_factory=WorkoutShares)
    notes: str = ""
    instagram_story_link: Optional[str] = None
    status: WorkoutStatus = WorkoutStatus.PENDING
    rejection_reason: Optional[str] = None
    hpoints_earned: int = 0
    podium_position: Optional[int] = None
    validated_by: Optional[UUID] = None
    validated_at: Optional[datetime] = None
    created_at: datetime

    def can_transition(self) -> bool:
        return self.status == WorkoutStatus.PENDING


class ValidationResult(CamelModel):
    workout: Workout
    ledger_entry: Optional[LedgerEntry] = None
    points_awarded: int = 0


# --------------------------------------------------------------------------- #
# Products and redemptions
# --------------------------------------------------------------------------- #


class ProductStock(CamelModel):
    quantity: int = Field(default=0, ge=0)
    available: bool = True


class ProductCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    category: str = ""
    points_cost: int = Field(..., gt=0)
    stock: ProductStock = Field(default_factory=ProductStock)
    active: bool = True


class ProductUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    points_cost: Optional[int] = Field(default=None, gt=0)
    stock: Optional[ProductStock] = None
    active: Optional[bool] = None


class Product(CamelModel):
    id: UUID
    name: str
    description: str = ""
    category: str = ""
    points_cost: int
    stock: ProductStock
    active: bool = True
    version: int = 1
    created_at: datetime
    updated_at: datetime

    def is_available(self, quantity: int = 1) -> bool:
        return self.active and self.stock.available and self.stock.quantity >= quantity


class RedeemRequest(CamelModel):
    product_id: UUID
    quantity: int = 1


class CancelRedemptionRequest(CamelModel):
    reason: str = ""


class Redemption(CamelModel):
    id: UUID
    user_id: UUID
    product_id: UUID
    product_name: str
    quantity: int
    points_spent: int
    code: str
    status: RedemptionStatus = RedemptionStatus.PENDING
    ledger_entry_id: Optional[UUID] = None
    created_at: datetime
    fulfilled_at: Optional[datetime] = None
    fulfilled_by: Optional[UUID] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[UUID] = None
    cancel_reason: Optional[str] = None


class RedemptionResult(CamelModel):
    redemption: Redemption
    ledger_entry: LedgerEntry
    balance: int


# --------------------------------------------------------------------------- #
# Envelope
# --------------------------------------------------------------------------- #

T = TypeVar("T")


class ApiResponse(CamelModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


class ErrorDetail(CamelModel):
    code: str
    message: str


class ErrorResponse(CamelModel):
    success: bool = False
    error: ErrorDetail
