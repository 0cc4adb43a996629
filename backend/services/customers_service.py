"""Customer relationship views: birthdays, top customers, attaching sales.

Revenue per customer follows the reports rules: a cash sale counts its
total_revenue on the sale movement, an installment sale counts the down
payment and each received installment (its sale movements carry zero).
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from errors import Conflict, ValidationFailed
from models import AuditAction, MovementType
from services.sales_service import add_months
from services.tenant_store import TenantScope
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

TOP_CUSTOMERS_LIMIT = 3
AVAILABLE_MOVEMENTS_LIMIT = 100

# Received-revenue entries written by sales_service
_RECEIPT_NOTES = [
    {"notes": {"$regex": "Pagamento de parcela", "$options": "i"}},
    {"notes": {"$regex": "Entrada.*Venda parcelada", "$options": "i"}},
]


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def age_on(birthday: datetime, today: datetime) -> int:
    """Completed years at `today`."""
    return today.year - birthday.year - ((today.month, today.day) < (birthday.month, birthday.day))


def month_window(month: Optional[int] = None, year: Optional[int] = None,
                 now: Optional[datetime] = None) -> Dict[str, datetime]:
    """[first instant of the month, first instant of the next month). Missing parts default to now."""
    now = now or datetime.now(timezone.utc)
    start = datetime(year or now.year, month or now.month, 1, tzinfo=timezone.utc)
    return {"$gte": start, "$lt": add_months(start, 1)}


# ============================================================================
# BIRTHDAYS
# ============================================================================

async def list_birthdays(scope: TenantScope, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Customers' children with a birthday in the current month, by day of month."""
    now = now or datetime.now(timezone.utc)
    cursor = scope.collection("customers").find(
        {"children": {"$ne": []}},
        {"customer_id": 1, "name": 1, "phone": 1, "instagram": 1, "children": 1},
    )
    found = []
    async for customer in cursor:
        for child in customer.get("children") or []:
            birthday = child.get("birthday")
            if not birthday:
                continue
            birthday = _as_utc(birthday)
            if birthday.month != now.month:
                continue
            age = child.get("age")
            found.append({
                "customer_id": customer["customer_id"],
                "customer_name": customer.get("name"),
                "customer_phone": customer.get("phone"),
                "customer_instagram": customer.get("instagram"),
                "child_name": child.get("name"),
                "birthday": birthday,
                "age": age if age is not None else age_on(birthday, now),
                "sizes": child.get("sizes") or [],
                "gender": child.get("gender"),
            })
    found.sort(key=lambda entry: entry["birthday"].day)
    return found


# ============================================================================
# TOP CUSTOMERS
# ============================================================================

async def top_customers(scope: TenantScope, month: Optional[int] = None, year: Optional[int] = None,
                        now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Customers who spent the most in the month, highest first."""
    movements = scope.collection("movements").find(
        {
            "customer_id": {"$ne": None},
            "created_at": month_window(month, year, now),
            "$or": [
                {"type": MovementType.SAIDA.value},
                {"type": MovementType.ENTRADA.value, "$or": _RECEIPT_NOTES},
            ],
        },
        {"customer_id": 1, "total_revenue": 1},
    )
    totals: Dict[str, float] = {}
    async for movement in movements:
        revenue = movement.get("total_revenue") or 0
        if revenue:
            totals[movement["customer_id"]] = totals.get(movement["customer_id"], 0) + revenue
    if not totals:
        return []

    customers = await scope.collection("customers").find(
        {"customer_id": {"$in": list(totals)}},
        {"customer_id": 1, "name": 1, "phone": 1, "instagram": 1},
    ).to_list(length=len(totals))
    ranked = sorted(
        ({**customer, "total_spent": round(totals[customer["customer_id"]], 2)} for customer in customers),
        key=lambda entry: entry["total_spent"],
        reverse=True,
    )
    return ranked[:TOP_CUSTOMERS_LIMIT]


# ============================================================================
# UNATTACHED SALES
# ============================================================================

async def list_available_movements(scope: TenantScope) -> List[Dict[str, Any]]:
    """Sale movements recorded without a customer, newest first."""
    cursor = scope.collection("movements").find(
        {"type": MovementType.SAIDA.value, "customer_id": None}
    ).sort([("created_at", -1)]).limit(AVAILABLE_MOVEMENTS_LIMIT)
    return await cursor.to_list(length=AVAILABLE_MOVEMENTS_LIMIT)


async def attach_movement(scope: TenantScope, customer_id: str, movement_id: str) -> Dict[str, Any]:
    """Assign an unattached sale movement to a customer. A movement is assigned at most once."""
    await scope.collection("customers").get_or_404(customer_id, message="Customer not found")
    movements = scope.collection("movements")
    movement = await movements.get_or_404(movement_id, message="Movement not found")
    if movement.get("type") != MovementType.SAIDA.value:
        raise ValidationFailed.for_field("movement_id", "Only sale movements can be assigned to a customer")

    result = await movements.update_one(
        {"movement_id": movement_id, "customer_id": None},
        {"$set": {"customer_id": customer_id}}
    )
    if result.matched_count == 0:
        raise Conflict("Movement is already assigned to a customer", error_code="MOVEMENT_ASSIGNED")

    await create_audit_log(
        action=AuditAction.MOVEMENT_ASSIGNED,
        actor_id=scope.tenant_id,
        tenant_id=scope.tenant_id,
        resource_type="movement",
        resource_id=movement_id,
        metadata={"customer_id": customer_id},
    )
    logger.info("Movement %s assigned to customer %s for tenant %s", movement_id, customer_id, scope.tenant_id)
    return await movements.get_or_404(movement_id, message="Movement not found")
