"""
Workout validation workflow.

A submitted workout waits in ``pending`` until an admin approves or rejects
it. Both transitions are terminal and guarded by a compare-and-swap on the
stored status, so a workout can be credited at most once.
"""
import logging
from typing import Callable, Optional
from uuid import UUID, uuid4

from rules import RuleEngine, TriggerEvent, default_rules

from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    LedgerSource,
    SubmitWorkoutRequest,
    ValidationResult,
    Workout,
    WorkoutStatus,
)
from .service import LedgerService
from .storage import VersionConflict

logger = logging.getLogger(__name__)

PointsPolicy = Callable[[Workout], int]


def _workout_context(workout: Workout) -> dict:
    return {"workout": workout.model_dump(mode="json")}


def workout_points_policy(engine: Optional[RuleEngine] = None) -> PointsPolicy:
    """Base points for the workout plus every bonus, podium included."""
    engine = engine or RuleEngine(default_rules())

    def compute_points(workout: Workout) -> int:
        context = _workout_context(workout)
        return (
            engine.compute_points(TriggerEvent.WORKOUT_APPROVED, context)
            + engine.compute_points(TriggerEvent.PODIUM_FINISH, context)
        )

    return compute_points


def podium_bonus_policy(engine: Optional[RuleEngine] = None) -> PointsPolicy:
    """Podium bonus alone, added on top of an admin's points override."""
    engine = engine or RuleEngine(default_rules())

    def compute_bonus(workout: Workout) -> int:
        return engine.compute_points(TriggerEvent.PODIUM_FINISH, _workout_context(workout))

    return compute_bonus


class WorkoutValidationService:
    def __init__(
        self,
        ledger: LedgerService,
        compute_points: Optional[PointsPolicy] = None,
        podium_bonus: Optional[PointsPolicy] = None,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.compute_points = compute_points or workout_points_policy()
        self.podium_bonus = podium_bonus or podium_bonus_policy()

    def submit(self, user_id: UUID, request: SubmitWorkoutRequest) -> Workout:
        self.ledger.get_user(user_id)
        if not request.photo_ref or not request.photo_ref.strip():
            raise ValidationError("A photo is required to validate the workout")
        if request.distance_km <= 0:
            raise ValidationError("Distance must be greater than zero")
        if request.duration_seconds <= 0:
            raise ValidationError("Duration must be greater than zero")

        data = request.model_dump()
        data.update(
            id=uuid4(),
            user_id=user_id,
            photo_ref=request.photo_ref.strip(),
            pace_seconds_per_km=round(request.duration_seconds / request.distance_km),
            status=WorkoutStatus.PENDING,
            hpoints_earned=0,
            created_at=self.ledger.clock(),
        )
        row = self.storage.insert_workout(data)
        logger.info("Workout submitted", extra={"extra_fields": {"workout_id": str(row["id"])}})
        return Workout(**row)

    def get_workout(self, workout_id: UUID) -> Workout:
        row = self.storage.get_workout(workout_id)
        if not row:
            raise NotFoundError(f"Workout {workout_id} not found")
        return Workout(**row)

    def list_user_workouts(self, user_id: UUID, status: Optional[WorkoutStatus] = None) -> list[Workout]:
        self.ledger.get_user(user_id)
        rows = self.storage.list_workouts(user_id=user_id, status=status)
        return [Workout(**w) for w in reversed(rows)]

    def validation_queue(self, limit: Optional[int] = None) -> list[Workout]:
        limit = limit or self.ledger.settings.validation_queue_limit
        rows = self.storage.list_workouts(status=WorkoutStatus.PENDING)
        return [Workout(**w) for w in rows[:limit]]

    def approve(
        self,
        workout_id: UUID,
        admin_id: UUID,
        points: Optional[int] = None,
        podium_position: Optional[int] = None,
    ) -> ValidationResult:
        workout = self.get_workout(workout_id)
        if not workout.can_transition():
            raise InvalidTransitionError(f"Cannot approve workout in {workout.status.value} state")

        candidate = workout.model_copy(update={"podium_position": podium_position})
        if points is not None:
            awarded = points + self.podium_bonus(candidate)
        else:
            awarded = self.compute_points(candidate)
        if awarded < 0:
            raise ValidationError("Awarded points cannot be negative")

        entry = None
        with self.storage.transaction():
            try:
                row = self.storage.compare_and_set_workout_status(
                    workout_id,
                    WorkoutStatus.PENDING,
                    {
                        "status": WorkoutStatus.APPROVED,
                        "hpoints_earned": awarded,
                        "podium_position": podium_position,
                        "validated_by": admin_id,
                        "validated_at": self.ledger.clock(),
                    },
                )
            except VersionConflict as exc:
                raise InvalidTransitionError(str(exc)) from exc
            if awarded > 0:
                entry = self.ledger.credit(
                    workout.user_id,
                    awarded,
                    LedgerSource.WORKOUT,
                    f"Workout approved - {workout.distance_km:g}km",
                    reference_id=workout_id,
                    created_by=admin_id,
                )

        logger.info(
            "Workout approved",
            extra={"extra_fields": {"workout_id": str(workout_id), "points": awarded, "admin_id": str(admin_id)}},
        )
        return ValidationResult(workout=Workout(**row), ledger_entry=entry, points_awarded=awarded)

    def reject(self, workout_id: UUID, admin_id: UUID, reason: str) -> ValidationResult:
        reason = (reason or "").strip()
        workout = self.get_workout(workout_id)
        if not workout.can_transition():
            raise InvalidTransitionError(f"Cannot reject workout in {workout.status.value} state")
        if not reason:
            raise ValidationError("A rejection reason is required")

        try:
            row = self.storage.compare_and_set_workout_status(
                workout_id,
                WorkoutStatus.PENDING,
                {
                    "status": WorkoutStatus.REJECTED,
                    "rejection_reason": reason,
                    "hpoints_earned": 0,
                    "validated_by": admin_id,
                    "validated_at": self.ledger.clock(),
                },
            )
        except VersionConflict as exc:
            raise InvalidTransitionError(str(exc)) from exc

        logger.info(
            "Workout rejected",
            extra={"extra_fields": {"workout_id": str(workout_id), "admin_id": str(admin_id)}},
        )
        return ValidationResult(workout=Workout(**row))
