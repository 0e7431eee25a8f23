"""
Sequential inventory writes for reviewed OCR items.

Each item is written on its own; one failure is counted and the batch
moves on to the next item.
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional

from pantry_jobs.client.errors import (
    InventoryConflict,
    InventoryNotFound,
    InventoryValidationError,
    InventoryWriteError,
)
from pantry_jobs.client.transport import ApiSession
from pantry_jobs.utils.logger import get_logger

logger = get_logger(__name__)

MASS_VOLUME_UNITS = {"g", "ml"}


@dataclass(frozen=True)
class BatchOutcome:
    success_count: int
    fail_count: int

    @property
    def total(self) -> int:
        return self.success_count + self.fail_count

    def as_dict(self) -> Dict[str, int]:
        return {"successCount": self.success_count, "failCount": self.fail_count}


async def run_batch(items: Iterable[Any], write_item: Callable[[Any], Awaitable[Any]]) -> BatchOutcome:
    success = 0
    failed = 0
    for index, item in enumerate(items):
        try:
            await write_item(item)
        except Exception as e:
            failed += 1
            logger.warning(
                "batch.item_failed",
                extra={"count": index, "error": str(e), "error_type": type(e).__name__},
            )
        else:
            success += 1

    logger.info(f"Batch finished: {success} written, {failed} failed")
    return BatchOutcome(success_count=success, fail_count=failed)


def _field(item: Any, name: str, default: Any = None) -> Any:
    if isinstance(item, Mapping):
        return item.get(name, default)
    return getattr(item, name, default)


def build_item_payload(item: Any) -> Dict[str, Any]:
    """Inventory item body for one extracted item. Unset fields are omitted."""
    unit = _field(item, "unit") or "pcs"
    quantity = _field(item, "quantity")
    confidence = _field(item, "confidence")
    nutrition_basis = _field(item, "nutrition_basis") or (100 if unit in MASS_VOLUME_UNITS else 1)

    notes = "Added via OCR Scan"
    if confidence:
        notes += f" ({round(float(confidence) * 100)}% conf)"

    payload = {
        "foodItemId": None,
        "customName": _field(item, "name"),
        "quantity": float(quantity) if quantity is not None else 1.0,
        "unit": unit,
        "notes": notes,
        "nutritionPerUnit": _field(item, "nutrition"),
        "nutritionUnit": _field(item, "nutrition_unit") or unit,
        "nutritionBasis": nutrition_basis,
        "basePrice": _field(item, "base_price"),
    }
    return {key: value for key, value in payload.items() if value is not None or key == "foodItemId"}


class HttpInventoryWriter:
    """Writes items through POST /inventories/{inventory_id}/items."""

    def __init__(self, session: ApiSession):
        self.session = session

    async def add_item(self, inventory_id: str, item: Any) -> Optional[Dict[str, Any]]:
        response = await self.session.request(
            "POST", f"/inventories/{inventory_id}/items", json=build_item_payload(item),
        )
        status = response.status_code
        if status < 400:
            try:
                return response.json()
            except ValueError:
                return None

        detail = _error_detail(response)
        if status == 404:
            raise InventoryNotFound(f"Inventory {inventory_id} not found", status)
        if status in (400, 422):
            raise InventoryValidationError(detail or "Item rejected", status)
        if status == 409:
            raise InventoryConflict(detail or "Item conflicts with existing entry", status)
        raise InventoryWriteError(detail or f"Inventory write failed with HTTP {status}", status)


def _error_detail(response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error")
        return str(detail) if detail else None
    return None
