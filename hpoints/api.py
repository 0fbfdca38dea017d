import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .errors import ForbiddenError, HPointsError, NotFoundError, UnauthorizedError
from .logging_config import setup_logging
from .models import (
    AdjustPointsRequest,
    ApiResponse,
    ApproveWorkoutRequest,
    BalanceSummary,
    CancelRedemptionRequest,
    ErrorDetail,
    ErrorResponse,
    ExpirationRunResult,
    LedgerEntry,
    LedgerHistoryResponse,
    LedgerSource,
    Product,
    ProductCreate,
    ProductUpdate,
    Redemption,
    RedemptionResult,
    RedemptionStatus,
    RedeemRequest,
    RejectWorkoutRequest,
    SubmitWorkoutRequest,
    UserRole,
    ValidationResult,
    Workout,
    WorkoutStatus,
)
from .products import ProductService
from .redemptions import RedemptionService
from .service import Clock, LedgerService
from .storage import DuplicateKeyError, InMemoryStorage, VersionConflict
from .validation import PointsPolicy, WorkoutValidationService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    ledger: LedgerService
    validation: WorkoutValidationService
    products: ProductService
    redemptions: RedemptionService


def build_services(
    storage: Optional[InMemoryStorage] = None,
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    compute_points: Optional[PointsPolicy] = None,
) -> Services:
    ledger = LedgerService(storage, settings, clock)
    products = ProductService(ledger.storage, ledger.clock)
    return Services(
        ledger=ledger,
        validation=WorkoutValidationService(ledger, compute_points),
        products=products,
        redemptions=RedemptionService(ledger, products),
    )


# --------------------------------------------------------------------------- #
# Dependencies
# --------------------------------------------------------------------------- #


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_user_id(x_user_id: Optional[UUID] = Header(default=None)) -> UUID:
    if x_user_id is None:
        raise UnauthorizedError("Missing X-User-Id header")
    return x_user_id


def get_admin_id(
    x_admin_id: Optional[UUID] = Header(default=None),
    services: Services = Depends(get_services),
) -> UUID:
    if x_admin_id is None:
        raise UnauthorizedError("Missing X-Admin-Id header")
    try:
        admin = services.ledger.get_user(x_admin_id)
    except NotFoundError as exc:
        raise ForbiddenError("Admin access required") from exc
    if admin.role != UserRole.ADMIN:
        raise ForbiddenError("Admin access required")
    return admin.id


# --------------------------------------------------------------------------- #
# Routes
# --------------------------------------------------------------------------- #

router = APIRouter()


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "hpoints-ledger"}


@router.get("/hpoints/balance", response_model=ApiResponse[BalanceSummary], tags=["HPoints"])
def get_balance(
    window_days: Optional[int] = Query(default=None, alias="windowDays", gt=0),
    user_id: UUID = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return ApiResponse(data=services.ledger.get_balance(user_id, window_days))


@router.get("/hpoints/history", response_model=ApiResponse[LedgerHistoryResponse], tags=["HPoints"])
def get_history(
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    source: Optional[LedgerSource] = None,
    user_id: UUID = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return ApiResponse(data=services.ledger.get_ledger_history(user_id, page, limit, source))


@router.post("/workouts", response_model=ApiResponse[Workout], status_code=status.HTTP_201_CREATED, tags=["Workouts"])
def submit_workout(
    request: SubmitWorkoutRequest,
    user_id: UUID = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    workout = services.validation.submit(user_id, request)
    return ApiResponse(data=workout, message="Workout submitted for validation")


@router.get("/workouts", response_model=ApiResponse[list[Workout]], tags=["Workouts"])
def list_workouts(
    workout_status: Optional[WorkoutStatus] = Query(default=None, alias="status"),
    user_id: UUID = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return ApiResponse(data=services.validation.list_user_workouts(user_id, workout_status))


@router.get("/workouts/{workout_id}", response_model=ApiResponse[Workout], tags=["Workouts"])
def get_workout(
    workout_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    workout = services.validation.get_workout(workout_id)
    if workout.user_id != user_id:
        raise NotFoundError(f"Workout {workout_id} not found")
    return ApiResponse(data=workout)


@router.get("/admin/validation/queue", response_model=ApiResponse[list[Workout]], tags=["Admin"])
def validation_queue(
    limit: Optional[int] = Query(default=None, ge=1),
    admin_id: UUID = Depends(get_admin_id),
    services: Services = Depends(get_services),
):
    return ApiResponse(data=services.validation.validation_queue(limit))


@router.post("/admin/validation/{workout_id}/approve", response_model=ApiResponse[ValidationResult], tags=["Admin"])
def approve_workout(
    workout_id: UUID,
    request: Optional[ApproveWorkoutRequest] = None,
    admin_id: UUID = Depends(get_admin_id),
    services: Services = Depends(get_services),
):
    request = request or ApproveWorkoutRequest()
    result = services.validation.approve(workout_id, admin_id, request.points, request.podium_position)
    return ApiResponse(data=result, message="Workout approved")


@router.post("/admin/validation/{workout_id}/reject", response_model=ApiResponse[ValidationResult], tags=["Admin"])
def reject_workout(
    workout_id: UUID,
    request: RejectWorkoutRequest,
    admin_id: UUID = Depends(get_admin_id),
    services: Services = Depends(get_services),
):
    result = services.validation.reject(workout_id, admin_id, request.reason)
    return ApiResponse(data=result, message="Workout rejected")


@router.post("/admin/hpoints/adjust", response_model=ApiResponse[LedgerEntry], tags=["Admin"])
def adjust_points(
    request: AdjustPointsRequest,
    admin_id: UUID = Depends(get_admin_id),
    services: Services = Depends(get_services),
):
    entry = services.ledger.adjust(request.user_id, request.points, request.reason, admin_id)
    return ApiResponse(data=entry, message=f"Adjusted {request.points} HPoints")


@router.get("/admin/hpoints/users/{user_id}/history", response_model=ApiResponse[LedgerHistoryResponse], tags=["Admin"])
def get_user_history(
    user_id: UUID,
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    source: Optional[LedgerSource] = None,
    admin_id: UUID = Depends(get_admin_id),
    services: Services = Depends(get_services),
):
    return ApiResponse(data=services.ledger.get_ledger_history(user_id, page, limit, source))


@router.get("/admin/hpoints/users/{user_id}/balance", response_model=ApiResponse[BalanceSummary], tags=["Admin"])
def get_user_balance(
    user_id: UUID,
    admin_id: UUID = Depends(get_admin_id),
    services: Services = Depends(get_services),
):
    return ApiResponse(data=services.ledger.get_balance(user_id))


@router.post("/admin/hpoints/expire", response_model=ApiResponse[ExpirationRunResult], tags=["Admin"])
def expire_points(
    admin_id: UUID = Depends(get_admin_id),
    services: Services = Depends(get_services),
):
    result = services.ledger.expire_all()
    return ApiResponse(data=result, message=f"{result.expired_entries} entries expired")


@router.get("/products", response_model=ApiResponse[list[Product]], tags=["Products"])
def list_products(services: Services = Depends(get_services)):
    return ApiResponse(data=services.products.list_active())


@router.get("/products/{product_id}", response_model=ApiResponse[Product], tags=["Products"])
def get_product(product_id: UUID, services: Services = Depends(get_services)):
    return ApiResponse(data=services.products.get(product_id))


@router.post("/products", response_model=ApiResponse[Product], status_code=status.HTTP_201_CREATED, tags=["Products"])
def create_product(
    request: ProductCreate,
    admin_id: UUID = Depends(get_admin_id),
    services: Services = Depends(get_services),
):
    return ApiResponse(data=services.products.create(request), message="Product created")


@router.put("/products/{product_id}", response_model=ApiResponse[Product], tags=["Products"])
def update_product(
    product_id: UUID,
    request: ProductUpdate,
    admin_id: UUID = Depends(get_admin_id),
    services: Services = Depends(get_services),
):
    return ApiResponse(data=services.products.update(product_id, request), message="Product updated")


@router.delete("/products/{product_id}", response_model=ApiResponse[Product], tags=["Products"])
def delete_product(
    product_id: UUID,
    admin_id: UUID = Depends(get_admin_id),
    services: Services = Depends(get_services),
):
    return ApiResponse(data=services.products.delete(product_id), message="Product deactivated")


@router.post("/redemptions", response_model=ApiResponse[RedemptionResult], status_code=status.HTTP_201_CREATED, tags=["Redemptions"])
def redeem(
    request: RedeemRequest,
    user_id: UUID = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    result = services.redemptions.redeem(user_id, request.product_id, request.quantity)
    return ApiResponse(data=result, message="Redemption created")


@router.get("/redemptions", response_model=ApiResponse[list[Redemption]], tags=["Redemptions"])
def list_redemptions(
    redemption_status: Optional[RedemptionStatus] = Query(default=None, alias="status"),
    user_id: UUID = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return ApiResponse(data=services.redemptions.list_for_user(user_id, redemption_status))


@router.get("/redemptions/{redemption_id}", response_model=ApiResponse[Redemption], tags=["Redemptions"])
def get_redemption(
    redemption_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return ApiResponse(data=services.redemptions.get(redemption_id, user_id))


@router.post("/redemptions/{redemption_id}/cancel", response_model=ApiResponse[Redemption], tags=["Redemptions"])
def cancel_redemption(
    redemption_id: UUID,
    request: Optional[CancelRedemptionRequest] = None,
    user_id: UUID = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    reason = request.reason if request else ""
    redemption = services.redemptions.cancel(redemption_id, user_id, reason)
    return ApiResponse(data=redemption, message="Redemption cancelled and points refunded")


@router.get("/admin/redemptions", response_model=ApiResponse[list[Redemption]], tags=["Admin"])
def list_all_redemptions(
    redemption_status: Optional[RedemptionStatus] = Query(default=None, alias="status"),
    admin_id: UUID = Depends(get_admin_id),
    services: Services = Depends(get_services),
):
    return ApiResponse(data=services.redemptions.list_all(redemption_status))


@router.post("/admin/redemptions/{redemption_id}/fulfill", response_model=ApiResponse[Redemption], tags=["Admin"])
def fulfill_redemption(
    redemption_id: UUID,
    admin_id: UUID = Depends(get_admin_id),
    services: Services = Depends(get_services),
):
    return ApiResponse(data=services.redemptions.fulfill(redemption_id, admin_id), message="Redemption fulfilled")


@router.post("/admin/redemptions/{redemption_id}/cancel", response_model=ApiResponse[Redemption], tags=["Admin"])
def admin_cancel_redemption(
    redemption_id: UUID,
    request: CancelRedemptionRequest,
    admin_id: UUID = Depends(get_admin_id),
    services: Services = Depends(get_services),
):
    redemption = services.redemptions.cancel(redemption_id, admin_id, request.reason, as_admin=True)
    return ApiResponse(data=redemption, message="Redemption cancelled")


# --------------------------------------------------------------------------- #
# Error handling
# --------------------------------------------------------------------------- #


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(HPointsError)
    async def hpoints_error_handler(request: Request, exc: HPointsError):
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        return _error_response(exc.status_code, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{location}: {first.get('msg')}" if location else first.get("msg", "Invalid request")
        else:
            message = "Invalid request"
        return _error_response(status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", message)

    @app.exception_handler(DuplicateKeyError)
    async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
        return _error_response(status.HTTP_409_CONFLICT, "CONFLICT", f"{exc.index} already exists")

    @app.exception_handler(VersionConflict)
    async def version_conflict_handler(request: Request, exc: VersionConflict):
        logger.warning("Version conflict on %s %s: %s", request.method, request.url.path, exc)
        return _error_response(status.HTTP_409_CONFLICT, "CONFLICT", str(exc))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR", "Internal server error")


def create_app(
    storage: Optional[InMemoryStorage] = None,
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    compute_points: Optional[PointsPolicy] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description="HPoints ledger, workout validation and rewards redemption",
        version="1.0.0",
        root_path=root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = build_services(storage, settings, clock, compute_points)
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
