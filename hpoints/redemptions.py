"""
Rewards redemption.

Redeeming decrements product stock, debits the ledger and records the
redemption in a single storage transaction. Stock writes are optimistic:
the product version read during the pre-checks must still be current when
the transaction runs, otherwise the whole attempt is retried.
"""
import logging
from typing import Optional
from uuid import UUID, uuid4

from .errors import (
    ConflictError,
    InsufficientBalanceError,
    InvalidTransitionError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from .models import (
    LedgerSource,
    Product,
    Redemption,
    RedemptionResult,
    RedemptionStatus,
)
from .products import ProductService
from .service import LedgerService
from .storage import VersionConflict

logger = logging.getLogger(__name__)


def _check_available(product: Product, quantity: int) -> None:
    if product.is_available(quantity):
        return
    if not product.active or not product.stock.available:
        raise UnavailableError(f"Product {product.name} is not available")
    raise UnavailableError(
        f"Insufficient stock for {product.name}: {product.stock.quantity} left, {quantity} requested"
    )


def _redemption_code() -> str:
    return uuid4().hex[:8].upper()


class RedemptionService:
    def __init__(self, ledger: LedgerService, products: ProductService):
        self.ledger = ledger
        self.products = products
        self.storage = ledger.storage

    def redeem(self, user_id: UUID, product_id: UUID, quantity: int = 1) -> RedemptionResult:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        self.ledger.get_user(user_id)

        retries = self.ledger.settings.redemption_max_retries
        for attempt in range(1, retries + 1):
            product = self.products.get(product_id)
            _check_available(product, quantity)
            cost = product.points_cost * quantity
            balance = self.ledger.current_balance(user_id)
            if balance < cost:
                raise InsufficientBalanceError(
                    f"Insufficient HPoints: balance {balance}, required {cost}",
                    balance=balance,
                    required=cost,
                )

            try:
                return self._redeem_once(user_id, product, quantity)
            except VersionConflict as exc:
                logger.warning(
                    "Redemption conflict, retrying",
                    extra={"extra_fields": {"product_id": str(product_id), "attempt": attempt, "error": str(exc)}},
                )

        raise ConflictError(f"Could not redeem product {product_id} after {retries} attempts")

    def _redeem_once(self, user_id: UUID, product: Product, quantity: int) -> RedemptionResult:
        now = self.ledger.clock()
        with self.storage.transaction():
            current = self.products.get(product.id)
            if current.version != product.version:
                raise VersionConflict(f"Product {product.id} changed during redemption")
            _check_available(current, quantity)

            cost = current.points_cost * quantity
            stock = current.stock.model_dump()
            stock["quantity"] -= quantity
            self.storage.update_product(
                current.id,
                {"stock": stock, "updated_at": now},
                expected_version=current.version,
            )

            redemption_id = uuid4()
            entry = self.ledger.debit(
                user_id,
                cost,
                LedgerSource.REDEMPTION,
                f"Redemption: {current.name} x{quantity}",
                reference_id=redemption_id,
            )
            row = self.storage.insert_redemption({
                "id": redemption_id,
                "user_id": user_id,
                "product_id": current.id,
                "product_name": current.name,
                "quantity": quantity,
                "points_spent": cost,
                "code": _redemption_code(),
                "status": RedemptionStatus.PENDING,
                "ledger_entry_id": entry.id,
                "created_at": now,
            })
            balance = self.ledger.current_balance(user_id)

        logger.info(
            "Redemption created",
            extra={"extra_fields": {
                "redemption_id": str(redemption_id),
                "user_id": str(user_id),
                "points": cost,
            }},
        )
        return RedemptionResult(redemption=Redemption(**row), ledger_entry=entry, balance=balance)

    def get(self, redemption_id: UUID, user_id: Optional[UUID] = None) -> Redemption:
        row = self.storage.get_redemption(redemption_id)
        if not row or (user_id is not None and row["user_id"] != user_id):
            raise NotFoundError(f"Redemption {redemption_id} not found")
        return Redemption(**row)

    def list_for_user(self, user_id: UUID, status: Optional[RedemptionStatus] = None) -> list[Redemption]:
        self.ledger.get_user(user_id)
        return [Redemption(**r) for r in self.storage.list_redemptions(user_id=user_id, status=status)]

    def list_all(self, status: Optional[RedemptionStatus] = None) -> list[Redemption]:
        return [Redemption(**r) for r in self.storage.list_redemptions(status=status)]

    def fulfill(self, redemption_id: UUID, admin_id: UUID) -> Redemption:
        redemption = self.get(redemption_id)
        if redemption.status != RedemptionStatus.PENDING:
            raise InvalidTransitionError(f"Cannot fulfill redemption in {redemption.status.value} state")
        try:
            row = self.storage.compare_and_set_redemption_status(
                redemption_id,
                RedemptionStatus.PENDING,
                {
                    "status": RedemptionStatus.FULFILLED,
                    "fulfilled_at": self.ledger.clock(),
                    "fulfilled_by": admin_id,
                },
            )
        except VersionConflict as exc:
            raise InvalidTransitionError(str(exc)) from exc
        logger.info("Redemption fulfilled", extra={"extra_fields": {"redemption_id": str(redemption_id)}})
        return Redemption(**row)

    def cancel(self, redemption_id: UUID, actor_id: UUID, reason: str = "", as_admin: bool = False) -> Redemption:
        """Cancel a pending redemption, refunding its points and restocking the product."""
        redemption = self.get(redemption_id, None if as_admin else actor_id)
        if redemption.status != RedemptionStatus.PENDING:
            raise InvalidTransitionError(f"Cannot cancel redemption in {redemption.status.value} state")
        reason = (reason or "").strip()
        if as_admin and not reason:
            raise ValidationError("A cancellation reason is required")

        with self.storage.transaction():
            try:
                row = self.storage.compare_and_set_redemption_status(
                    redemption_id,
                    RedemptionStatus.PENDING,
                    {
                        "status": RedemptionStatus.CANCELLED,
                        "cancelled_at": self.ledger.clock(),
                        "cancelled_by": actor_id,
                        "cancel_reason": reason or "Cancelled by member",
                    },
                )
            except VersionConflict as exc:
                raise InvalidTransitionError(str(exc)) from exc

            self.ledger.refund(
                redemption.user_id,
                redemption.ledger_entry_id,
                f"Refund: {redemption.product_name} x{redemption.quantity}",
                reference_id=redemption_id,
                created_by=actor_id,
            )
            product = self.storage.get_product(redemption.product_id)
            if product:
                stock = dict(product["stock"])
                stock["quantity"] += redemption.quantity
                self.storage.update_product(redemption.product_id, {"stock": stock, "updated_at": self.ledger.clock()})

        logger.info(
            "Redemption cancelled",
            extra={"extra_fields": {"redemption_id": str(redemption_id), "points": redemption.points_spent}},
        )
        return Redemption(**row)
