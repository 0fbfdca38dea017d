import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID, uuid4

from .config import Settings, get_settings
from .errors import InsufficientBalanceError, NotFoundError, ValidationError
from .models import (
    BalanceSummary,
    ExpirationRunResult,
    LedgerEntry,
    LedgerHistoryResponse,
    LedgerSource,
    Pagination,
    User,
)
from .storage import DuplicateKeyError, InMemoryStorage

logger = logging.getLogger(__name__)

MIN_ADJUSTMENT_REASON_LENGTH = 10

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Lot:
    """Unconsumed remainder of one earn entry."""

    entry_id: UUID
    points: int
    remaining: int
    created_at: datetime
    expires_at: Optional[datetime]

    def is_expired(self, at: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= at


def build_lots(entries: list[dict], allocations: Optional[dict[UUID, list[tuple[Lot, int]]]] = None) -> list[Lot]:
    """
    Replay a user's entries in append order and return their earn lots.

    Expiration entries zero the lot they reference. Every other debit draws
    down the lots that expire soonest first, skipping lots already expired
    when the debit was written. When ``allocations`` is given it is filled
    with the ``(lot, points)`` pairs each debit consumed.
    """
    lots: list[Lot] = []
    by_id: dict[UUID, Lot] = {}
    for entry in sorted(entries, key=lambda e: e["sequence"]):
        points = entry["points"]
        if points > 0:
            lot = Lot(
                entry_id=entry["id"],
                points=points,
                remaining=points,
                created_at=entry["created_at"],
                expires_at=entry.get("expires_at"),
            )
            lots.append(lot)
            by_id[lot.entry_id] = lot
        elif entry["source"] == LedgerSource.EXPIRATION:
            lot = by_id.get(entry.get("source_entry_id"))
            if lot is not None:
                lot.remaining = max(lot.remaining + points, 0)
        elif points < 0:
            taken = _consume_fifo(lots, -points, entry["created_at"])
            if allocations is not None:
                allocations[entry["id"]] = taken
    return lots


def _consume_fifo(lots: list[Lot], amount: int, at: datetime) -> list[tuple[Lot, int]]:
    taken: list[tuple[Lot, int]] = []
    # never-expiring lots go last; ties keep append order
    for lot in sorted(lots, key=lambda l: (l.expires_at is None, l.expires_at or l.created_at)):
        if amount <= 0:
            break
        if lot.remaining <= 0 or lot.is_expired(at):
            continue
        points = min(lot.remaining, amount)
        lot.remaining -= points
        amount -= points
        taken.append((lot, points))
    return taken


def summarize_balance(entries: list[dict], now: datetime, window_days: int) -> BalanceSummary:
    balance = sum(e["points"] for e in entries)
    total_earned = sum(
        e["points"] for e in entries
        if e["points"] > 0 and e["source"] != LedgerSource.REFUND
    )
    redeemed = -sum(
        e["points"] for e in entries
        if e["points"] < 0 and e["source"] == LedgerSource.REDEMPTION
    )
    refunded = sum(e["points"] for e in entries if e["source"] == LedgerSource.REFUND)

    horizon = now + timedelta(days=window_days)
    open_lots = [lot for lot in build_lots(entries) if lot.remaining > 0 and lot.expires_at is not None]
    expiring = sum(
        lot.remaining for lot in open_lots
        if now < lot.expires_at <= horizon
    )
    upcoming = [lot.expires_at for lot in open_lots if lot.expires_at > now]

    return BalanceSummary(
        balance=balance,
        total_earned=total_earned,
        total_redeemed=max(redeemed - refunded, 0),
        expiring=expiring,
        next_expiration_date=min(upcoming) if upcoming else None,
    )


class LedgerService:
    """Append-only HPoints ledger and the balances derived from it."""

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def credit(
        self,
        user_id: UUID,
        points: int,
        source: LedgerSource,
        reason: str,
        reference_id: Optional[UUID] = None,
        created_by: Optional[UUID] = None,
    ) -> LedgerEntry:
        if points <= 0:
            raise ValidationError("Credited points must be positive")
        self.get_user(user_id)

        now = self.clock()
        row = self.storage.insert_ledger_entry({
            "id": uuid4(),
            "user_id": user_id,
            "points": points,
            "reason": reason,
            "source": source,
            "created_at": now,
            "expires_at": now + timedelta(days=self.settings.expiration_days),
            "reference_id": reference_id,
            "source_entry_id": None,
            "created_by": created_by,
        })
        logger.info(
            "HPoints credited",
            extra={"extra_fields": {"user_id": str(user_id), "points": points, "source": source.value}},
        )
        return LedgerEntry(**row)

    def debit(
        self,
        user_id: UUID,
        points: int,
        source: LedgerSource,
        reason: str,
        reference_id: Optional[UUID] = None,
        created_by: Optional[UUID] = None,
    ) -> LedgerEntry:
        """Remove ``points`` from the balance, refusing to go below zero."""
        if points <= 0:
            raise ValidationError("Debited points must be positive")
        self.get_user(user_id)

        with self.storage.transaction():
            balance = self.current_balance(user_id)
            if balance < points:
                raise InsufficientBalanceError(
                    f"Insufficient HPoints: balance {balance}, required {points}",
                    balance=balance,
                    required=points,
                )
            row = self.storage.insert_ledger_entry({
                "id": uuid4(),
                "user_id": user_id,
                "points": -points,
                "reason": reason,
                "source": source,
                "created_at": self.clock(),
                "expires_at": None,
                "reference_id": reference_id,
                "source_entry_id": None,
                "created_by": created_by,
            })
        logger.info(
            "HPoints debited",
            extra={"extra_fields": {"user_id": str(user_id), "points": points, "source": source.value}},
        )
        return LedgerEntry(**row)

    def refund(
        self,
        user_id: UUID,
        debit_entry_id: UUID,
        reason: str,
        reference_id: Optional[UUID] = None,
        created_by: Optional[UUID] = None,
    ) -> list[LedgerEntry]:
        """
        Give back the points a debit consumed.

        One refund entry is written per lot the debit drew from, keeping that
        lot's original ``expires_at``. Points whose lot has lapsed in the
        meantime expire on the next materialization.
        """
        with self.storage.transaction():
            debit = self.storage.get_ledger_entry(debit_entry_id)
            if not debit or debit["user_id"] != user_id or debit["points"] >= 0:
                raise NotFoundError(f"Debit entry {debit_entry_id} not found")

            allocations: dict[UUID, list[tuple[Lot, int]]] = {}
            build_lots(self.storage.entries_for_user(user_id), allocations)
            restored = [(lot.entry_id, points, lot.expires_at) for lot, points in allocations.get(debit_entry_id, [])]
            now = self.clock()
            leftover = -debit["points"] - sum(points for _, points, _ in restored)
            if leftover > 0:
                restored.append((None, leftover, now + timedelta(days=self.settings.expiration_days)))

            created = []
            for lot_id, points, expires_at in restored:
                row = self.storage.insert_ledger_entry({
                    "id": uuid4(),
                    "user_id": user_id,
                    "points": points,
                    "reason": reason,
                    "source": LedgerSource.REFUND,
                    "created_at": now,
                    "expires_at": expires_at,
                    "reference_id": reference_id,
                    "source_entry_id": lot_id,
                    "created_by": created_by,
                })
                created.append(LedgerEntry(**row))

        logger.info(
            "HPoints refunded",
            extra={"extra_fields": {
                "user_id": str(user_id),
                "points": sum(e.points for e in created),
                "lots": len(created),
            }},
        )
        return created

    def adjust(self, user_id: UUID, points: int, reason: str, admin_id: UUID) -> LedgerEntry:
        reason = (reason or "").strip()
        if points == 0:
            raise ValidationError("Adjustment must not be zero")
        if len(reason) < MIN_ADJUSTMENT_REASON_LENGTH:
            raise ValidationError(
                f"Adjustment reason must have at least {MIN_ADJUSTMENT_REASON_LENGTH} characters"
            )
        if points > 0:
            return self.credit(user_id, points, LedgerSource.MANUAL_ADMIN,
                               f"Manual adjustment: {reason}", created_by=admin_id)
        return self.debit(user_id, -points, LedgerSource.MANUAL_ADMIN,
                          f"Manual adjustment (debit): {reason}", created_by=admin_id)

    # ------------------------------------------------------------------ #
    # Expiration
    # ------------------------------------------------------------------ #

    def _lapsed_lots(self, user_id: UUID, now: datetime) -> list[Lot]:
        return [
            lot for lot in build_lots(self.storage.entries_for_user(user_id))
            if lot.remaining > 0 and lot.is_expired(now)
        ]

    def materialize_expirations(self, user_id: UUID, now: Optional[datetime] = None) -> list[LedgerEntry]:
        """Write an expiration entry for every lapsed lot that still holds points."""
        now = now or self.clock()
        if not self._lapsed_lots(user_id, now):
            return []

        created: list[LedgerEntry] = []
        with self.storage.transaction():
            for lot in self._lapsed_lots(user_id, now):
                try:
                    row = self.storage.insert_ledger_entry({
                        "id": uuid4(),
                        "user_id": user_id,
                        "points": -lot.remaining,
                        "reason": f"Expired {lot.remaining} of {lot.points} HPoints",
                        "source": LedgerSource.EXPIRATION,
                        "created_at": now,
                        "expires_at": None,
                        "reference_id": None,
                        "source_entry_id": lot.entry_id,
                        "created_by": None,
                    })
                except DuplicateKeyError:
                    logger.debug("Expiration already recorded for entry %s", lot.entry_id)
                    continue
                created.append(LedgerEntry(**row))

        if created:
            logger.info(
                "HPoints expired",
                extra={"extra_fields": {
                    "user_id": str(user_id),
                    "entries": len(created),
                    "points": -sum(e.points for e in created),
                }},
            )
        return created

    def expire_all(self) -> ExpirationRunResult:
        result = ExpirationRunResult()
        now = self.clock()
        for user_id in self.storage.users_with_entries():
            created = self.materialize_expirations(user_id, now)
            if created:
                result.expired_entries += len(created)
                result.points_expired += -sum(e.points for e in created)
                result.affected_users.append(user_id)
        logger.info("Expiration sweep finished", extra={"extra_fields": result.model_dump(mode="json")})
        return result

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get_user(self, user_id: UUID) -> User:
        user = self.storage.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return User(**user)

    def current_balance(self, user_id: UUID) -> int:
        self.materialize_expirations(user_id)
        return sum(e["points"] for e in self.storage.entries_for_user(user_id))

    def get_balance(self, user_id: UUID, window_days: Optional[int] = None) -> BalanceSummary:
        self.get_user(user_id)
        window = window_days if window_days is not None else self.settings.expiring_window_days
        if window <= 0:
            raise ValidationError("Expiring window must be positive")

        now = self.clock()
        self.materialize_expirations(user_id, now)
        return summarize_balance(self.storage.entries_for_user(user_id), now, window)

    def get_ledger_history(
        self,
        user_id: UUID,
        page: int = 1,
        limit: Optional[int] = None,
        source: Optional[LedgerSource] = None,
    ) -> LedgerHistoryResponse:
        self.get_user(user_id)
        if page < 1:
            raise ValidationError("Page must be at least 1")
        limit = limit or self.settings.history_page_size
        if limit < 1:
            raise ValidationError("Limit must be at least 1")
        limit = min(limit, self.settings.history_max_page_size)

        self.materialize_expirations(user_id)
        rows = self.storage.entries_for_user(user_id)
        if source:
            rows = [e for e in rows if e["source"] == source]
        rows.sort(key=lambda e: e["sequence"], reverse=True)

        offset = (page - 1) * limit
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=[LedgerEntry(**e) for e in rows[offset:offset + limit]],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=len(rows),
                pages=math.ceil(len(rows) / limit),
            ),
        )

    def get_entry(self, entry_id: UUID) -> LedgerEntry:
        row = self.storage.get_ledger_entry(entry_id)
        if not row:
            raise NotFoundError(f"Ledger entry {entry_id} not found")
        return LedgerEntry(**row)

    def entries_for_reference(self, reference_id: UUID) -> list[LedgerEntry]:
        return [LedgerEntry(**e) for e in self.storage.entries_for_reference(reference_id)]
