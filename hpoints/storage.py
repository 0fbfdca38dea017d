import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional
from uuid import UUID

from .models import LedgerSource


class StorageError(Exception):
    pass


class DuplicateKeyError(StorageError):
    def __init__(self, index: str, key: Any):
        super().__init__(f"Duplicate key for {index}: {key}")
        self.index = index
        self.key = key


class VersionConflict(StorageError):
    pass


DEMO_MEMBER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
DEMO_MEMBER_2_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
DEMO_ADMIN_ID = UUID("770e8400-e29b-41d4-a716-446655440002")


class InMemoryStorage:
    """
    Dict-backed tables with all-or-nothing transactions.

    Every write goes through a re-entrant lock. ``transaction()`` snapshots
    all tables when the outermost block opens and restores them if that
    block raises, so a group of writes is either fully applied or not at all.
    """

    _TABLES = (
        "users",
        "workouts",
        "ledger_entries",
        "products",
        "redemptions",
        "expiration_index",
    )

    def __init__(self, seed: bool = True):
        self.users: dict[UUID, dict] = {}
        self.workouts: dict[UUID, dict] = {}
        self.ledger_entries: dict[UUID, dict] = {}
        self.products: dict[UUID, dict] = {}
        self.redemptions: dict[UUID, dict] = {}
        # (user_id, source_entry_id) -> expiration entry id
        self.expiration_index: dict[tuple[UUID, UUID], UUID] = {}
        self._sequence = 0
        self._lock = threading.RLock()
        self._depth = 0
        if seed:
            self._seed_data()

    def _seed_data(self):
        self.users[DEMO_MEMBER_ID] = {
            "id": DEMO_MEMBER_ID, "name": "Ana Runner",
            "email": "ana@example.com", "role": "member",
        }
        self.users[DEMO_MEMBER_2_ID] = {
            "id": DEMO_MEMBER_2_ID, "name": "Bruno Pacer",
            "email": "bruno@example.com", "role": "member",
        }
        self.users[DEMO_ADMIN_ID] = {
            "id": DEMO_ADMIN_ID, "name": "Carla Coach",
            "email": "carla@example.com", "role": "admin",
        }

    # ------------------------------------------------------------------ #
    # Transactions
    # ------------------------------------------------------------------ #

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            outermost = self._depth == 0
            snapshot = self._snapshot() if outermost else None
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self._restore(snapshot)
                raise
            finally:
                self._depth -= 1

    def _snapshot(self) -> dict:
        state = {name: copy.deepcopy(getattr(self, name)) for name in self._TABLES}
        state["_sequence"] = self._sequence
        return state

    def _restore(self, snapshot: dict) -> None:
        for name in self._TABLES:
            setattr(self, name, snapshot[name])
        self._sequence = snapshot["_sequence"]

    # ------------------------------------------------------------------ #
    # Users
    # ------------------------------------------------------------------ #

    def add_user(self, user: dict) -> dict:
        with self._lock:
            if user["id"] in self.users:
                raise DuplicateKeyError("users.id", user["id"])
            self.users[user["id"]] = dict(user)
            return dict(user)

    def get_user(self, user_id: UUID) -> Optional[dict]:
        user = self.users.get(user_id)
        return dict(user) if user else None

    # ------------------------------------------------------------------ #
    # Ledger
    # ------------------------------------------------------------------ #

    def insert_ledger_entry(self, entry: dict) -> dict:
        with self._lock:
            if entry["source"] == LedgerSource.EXPIRATION:
                key = (entry["user_id"], entry["source_entry_id"])
                if key in self.expiration_index:
                    raise DuplicateKeyError("ledger_entries.expiration", key)
                self.expiration_index[key] = entry["id"]
            self._sequence += 1
            row = dict(entry, sequence=self._sequence)
            self.ledger_entries[row["id"]] = row
            return dict(row)

    def get_ledger_entry(self, entry_id: UUID) -> Optional[dict]:
        entry = self.ledger_entries.get(entry_id)
        return dict(entry) if entry else None

    def entries_for_user(self, user_id: UUID) -> list[dict]:
        with self._lock:
            rows = [dict(e) for e in self.ledger_entries.values() if e["user_id"] == user_id]
        rows.sort(key=lambda e: e["sequence"])
        return rows

    def users_with_entries(self) -> list[UUID]:
        with self._lock:
            return list({e["user_id"] for e in self.ledger_entries.values()})

    def entries_for_reference(self, reference_id: UUID) -> list[dict]:
        with self._lock:
            rows = [dict(e) for e in self.ledger_entries.values() if e.get("reference_id") == reference_id]
        rows.sort(key=lambda e: e["sequence"])
        return rows

    # ------------------------------------------------------------------ #
    # Workouts
    # ------------------------------------------------------------------ #

    def insert_workout(self, workout: dict) -> dict:
        with self._lock:
            self.workouts[workout["id"]] = copy.deepcopy(workout)
            return copy.deepcopy(workout)

    def get_workout(self, workout_id: UUID) -> Optional[dict]:
        workout = self.workouts.get(workout_id)
        return copy.deepcopy(workout) if workout else None

    def list_workouts(self, user_id: Optional[UUID] = None, status: Optional[str] = None) -> list[dict]:
        with self._lock:
            rows = [
                copy.deepcopy(w) for w in self.workouts.values()
                if (user_id is None or w["user_id"] == user_id)
                and (status is None or w["status"] == status)
            ]
        rows.sort(key=lambda w: w["created_at"])
        return rows

    def compare_and_set_workout_status(self, workout_id: UUID, expected: str, changes: dict) -> dict:
        with self._lock:
            row = self.workouts.get(workout_id)
            if row is None:
                raise StorageError(f"Workout {workout_id} does not exist")
            if row["status"] != expected:
                raise VersionConflict(
                    f"Workout {workout_id} is {row['status']}, expected {expected}"
                )
            row.update(changes)
            return copy.deepcopy(row)

    # ------------------------------------------------------------------ #
    # Products
    # ------------------------------------------------------------------ #

    def insert_product(self, product: dict) -> dict:
        with self._lock:
            row = copy.deepcopy(product)
            row.setdefault("version", 1)
            self.products[row["id"]] = row
            return copy.deepcopy(row)

    def get_product(self, product_id: UUID) -> Optional[dict]:
        product = self.products.get(product_id)
        return copy.deepcopy(product) if product else None

    def list_products(self, active_only: bool = False) -> list[dict]:
        with self._lock:
            return [
                copy.deepcopy(p) for p in self.products.values()
                if p["active"] or not active_only
            ]

    def update_product(self, product_id: UUID, changes: dict, expected_version: Optional[int] = None) -> dict:
        with self._lock:
            row = self.products.get(product_id)
            if row is None:
                raise StorageError(f"Product {product_id} does not exist")
            if expected_version is not None and row["version"] != expected_version:
                raise VersionConflict(
                    f"Product {product_id} is at version {row['version']}, expected {expected_version}"
                )
            row.update(copy.deepcopy(changes))
            row["version"] += 1
            row["updated_at"] = changes.get("updated_at", datetime.now(timezone.utc))
            return copy.deepcopy(row)

    # ------------------------------------------------------------------ #
    # Redemptions
    # ------------------------------------------------------------------ #

    def insert_redemption(self, redemption: dict) -> dict:
        with self._lock:
            self.redemptions[redemption["id"]] = dict(redemption)
            return dict(redemption)

    def get_redemption(self, redemption_id: UUID) -> Optional[dict]:
        redemption = self.redemptions.get(redemption_id)
        return dict(redemption) if redemption else None

    def list_redemptions(self, user_id: Optional[UUID] = None, status: Optional[str] = None) -> list[dict]:
        with self._lock:
            rows = [
                dict(r) for r in self.redemptions.values()
                if (user_id is None or r["user_id"] == user_id)
                and (status is None or r["status"] == status)
            ]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return rows

    def compare_and_set_redemption_status(self, redemption_id: UUID, expected: str, changes: dict) -> dict:
        with self._lock:
            row = self.redemptions.get(redemption_id)
            if row is None:
                raise StorageError(f"Redemption {redemption_id} does not exist")
            if row["status"] != expected:
                raise VersionConflict(
                    f"Redemption {redemption_id} is {row['status']}, expected {expected}"
                )
            row.update(changes)
            return dict(row)
