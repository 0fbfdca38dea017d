import logging
from typing import Optional
from uuid import UUID, uuid4

from .errors import NotFoundError
from .models import Product, ProductCreate, ProductUpdate
from .service import Clock, utcnow
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class ProductService:
    """Rewards catalogue. Deleting a product only deactivates it."""

    def __init__(self, storage: InMemoryStorage, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or utcnow

    def list_active(self) -> list[Product]:
        rows = self.storage.list_products(active_only=True)
        rows.sort(key=lambda p: (p["points_cost"], p["name"]))
        return [Product(**p) for p in rows]

    def list_all(self) -> list[Product]:
        rows = self.storage.list_products()
        rows.sort(key=lambda p: p["name"])
        return [Product(**p) for p in rows]

    def get(self, product_id: UUID) -> Product:
        row = self.storage.get_product(product_id)
        if not row:
            raise NotFoundError(f"Product {product_id} not found")
        return Product(**row)

    def create(self, request: ProductCreate) -> Product:
        now = self.clock()
        row = self.storage.insert_product({
            **request.model_dump(),
            "id": uuid4(),
            "version": 1,
            "created_at": now,
            "updated_at": now,
        })
        logger.info("Product created", extra={"extra_fields": {"product_id": str(row["id"])}})
        return Product(**row)

    def update(self, product_id: UUID, request: ProductUpdate) -> Product:
        self.get(product_id)
        changes = {k: v for k, v in request.model_dump(exclude_unset=True).items() if v is not None}
        changes["updated_at"] = self.clock()
        row = self.storage.update_product(product_id, changes)
        logger.info("Product updated", extra={"extra_fields": {"product_id": str(product_id)}})
        return Product(**row)

    def delete(self, product_id: UUID) -> Product:
        self.get(product_id)
        row = self.storage.update_product(product_id, {"active": False, "updated_at": self.clock()})
        logger.info("Product deactivated", extra={"extra_fields": {"product_id": str(product_id)}})
        return Product(**row)
