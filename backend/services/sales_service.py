"""Stock movements, multi-item sales and installment schedules.

All storage access goes through the caller's TenantScope.

Sale atomicity:
- Installments are inserted with commit_state="pending"; every read filters
  on commit_state="committed", so a half-written schedule is never visible
- A single update_many on sale_group_id commits the whole schedule
- Any failure before the commit deletes the pending group, the sale's
  movements, and restores stock (compensating writes)
"""
import calendar
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from errors import Conflict, NotFound, ValidationFailed
from models import (
    AuditAction, DiscountType, Feature, MovementRequest, MovementType,
    PaymentMethod, PayInstallmentRequest, SaleItem, SaleRequest,
)
from services.tenant_store import TenantScope
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

PENDING = "pending"
COMMITTED = "committed"


def add_months(value: datetime, months: int) -> datetime:
    """Same day-of-month N months later, clamped to the month's last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def item_revenue(item: SaleItem) -> float:
    subtotal = item.sale_price * item.quantity
    discount = 0.0
    if item.discount_type and item.discount_value is not None:
        if item.discount_type == DiscountType.PERCENT:
            discount = subtotal * (item.discount_value / 100)
        else:
            discount = item.discount_value
    return max(0.0, subtotal - discount)


def build_installment_schedule(
    total: float,
    down_payment: float,
    installments_count: int,
    movement_ids: List[str],
    first_due_date: datetime,
    now: datetime,
) -> List[Dict[str, Any]]:
    """Installment documents for a sale, split evenly across its movements.

    Installment 0 is the down payment (already paid); 1..N are monthly.
    """
    per_movement = len(movement_ids)
    schedule = []

    if down_payment > 0:
        share = down_payment / per_movement
        for movement_id in movement_ids:
            schedule.append({
                "movement_id": movement_id,
                "installment_number": 0,
                "total_installments": installments_count,
                "amount": share,
                "due_date": now,
                "paid_amount": share,
                "paid_date": now,
                "is_paid": True,
                "notes": "Entrada",
            })

    installment_amount = max(0.0, total - down_payment) / installments_count
    first = first_due_date.replace(hour=0, minute=0, second=0, microsecond=0)
    for number in range(1, installments_count + 1):
        due_date = add_months(first, number - 1)
        for movement_id in movement_ids:
            schedule.append({
                "movement_id": movement_id,
                "installment_number": number,
                "total_installments": installments_count,
                "amount": installment_amount / per_movement,
                "due_date": due_date,
                "paid_amount": 0.0,
                "paid_date": None,
                "is_paid": False,
                "notes": None,
            })
    return schedule


# ============================================================================
# SINGLE MOVEMENTS
# ============================================================================

async def record_movement(scope: TenantScope, request: MovementRequest) -> Dict[str, Any]:
    """Stock entry, exit or adjustment for one product."""
    products = scope.collection("products")
    product = await products.get_or_404(request.product_id)

    supplier_id = request.supplier_id or product.get("supplier_id")
    if request.supplier_id:
        await scope.collection("suppliers").get_or_404(request.supplier_id)

    previous = product.get("quantity", 0)
    if request.type == MovementType.ENTRADA:
        new_quantity = previous + request.quantity
        result = await products.update_one({"product_id": product["product_id"], "quantity": previous},
                                           {"$set": {"quantity": new_quantity}})
    elif request.type == MovementType.SAIDA:
        if previous < request.quantity:
            raise ValidationFailed.for_field("quantity", f"Insufficient stock. Available: {previous}")
        new_quantity = previous - request.quantity
        result = await products.update_one({"product_id": product["product_id"], "quantity": previous},
                                           {"$set": {"quantity": new_quantity}})
    else:
        new_quantity = request.quantity
        result = await products.update_one({"product_id": product["product_id"]},
                                           {"$set": {"quantity": new_quantity}})

    if result.matched_count == 0:
        raise Conflict("Stock changed while recording the movement. Please retry.", error_code="STOCK_CHANGED")

    movement = {
        "movement_id": str(uuid.uuid4()),
        "product_id": product["product_id"],
        "supplier_id": supplier_id,
        "type": request.type.value,
        "quantity": request.quantity,
        "previous_quantity": previous,
        "new_quantity": new_quantity,
        "price": request.price,
        "total_price": request.price * request.quantity if request.price is not None else None,
        "notes": request.notes,
    }
    return await scope.collection("movements").insert_one(movement)


# ============================================================================
# SALES
# ============================================================================

async def create_sale(scope: TenantScope, request: SaleRequest, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    is_installment_sale = (
        request.payment_method == PaymentMethod.PIX_PARCELADO
        and (request.installments_count or 0) > 1
    )
    if is_installment_sale:
        scope.check(Feature.INSTALLMENTS)
        if not request.customer_id:
            raise ValidationFailed.for_field("customer_id", "Installment sales require a customer")

    if request.customer_id:
        await scope.collection("customers").get_or_404(request.customer_id, message="Customer not found")
    if request.campaign_id:
        await scope.collection("campaigns").get_or_404(request.campaign_id, message="Campaign not found")

    # Validate every product and quantity before writing anything
    products = scope.collection("products")
    requested: Dict[str, int] = {}
    for item in request.items:
        requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity
    stock: Dict[str, Dict[str, Any]] = {}
    errors = []
    for index, item in enumerate(request.items):
        if item.product_id not in stock:
            stock[item.product_id] = await products.get_or_404(item.product_id, message=f"Product not found: {item.product_id}")
        available = stock[item.product_id].get("quantity", 0)
        if available < requested[item.product_id]:
            errors.append({
                "field": f"items[{index}].quantity",
                "message": f"Insufficient stock for {stock[item.product_id]['name']}. Available: {available}",
            })
    if errors:
        raise ValidationFailed("Insufficient stock", errors=errors)

    total = sum(item_revenue(item) for item in request.items)
    if is_installment_sale and request.down_payment > total:
        raise ValidationFailed.for_field("down_payment", "Down payment exceeds the sale total")

    sale_group_id = str(uuid.uuid4())
    decremented: List[tuple] = []
    movements = scope.collection("movements")
    installments = scope.collection("payment_installments")

    try:
        movement_ids = []
        for item in request.items:
            result = await products.update_one(
                {"product_id": item.product_id, "quantity": {"$gte": item.quantity}},
                {"$inc": {"quantity": -item.quantity}}
            )
            if result.matched_count == 0:
                raise Conflict("Stock changed while recording the sale. Please retry.", error_code="STOCK_CHANGED")
            decremented.append((item.product_id, item.quantity))

            previous = stock[item.product_id]["quantity"]
            stock[item.product_id]["quantity"] = previous - item.quantity
            revenue = item_revenue(item)
            movement = await movements.insert_one({
                "movement_id": str(uuid.uuid4()),
                "product_id": item.product_id,
                "customer_id": request.customer_id,
                "campaign_id": request.campaign_id,
                "type": MovementType.SAIDA.value,
                "quantity": item.quantity,
                "previous_quantity": previous,
                "new_quantity": previous - item.quantity,
                "sale_price": item.sale_price,
                "discount_type": item.discount_type.value if item.discount_type else None,
                "discount_value": item.discount_value,
                # installment revenue is recognized as each installment is received
                "total_revenue": 0.0 if is_installment_sale else revenue,
                "payment_method": request.payment_method.value if request.payment_method else None,
                "installments_count": request.installments_count if is_installment_sale else None,
                "sale_group_id": sale_group_id,
                "notes": request.notes,
            })
            movement_ids.append(movement["movement_id"])

        schedule = []
        if is_installment_sale:
            first_due = request.installment_due_date or add_months(now, 1)
            if first_due.tzinfo is None:
                first_due = first_due.replace(tzinfo=timezone.utc)
            schedule = build_installment_schedule(
                total, request.down_payment, request.installments_count,
                movement_ids, first_due, now,
            )
            await installments.insert_many([
                {
                    **entry,
                    "installment_id": str(uuid.uuid4()),
                    "sale_group_id": sale_group_id,
                    "customer_id": request.customer_id,
                    "commit_state": PENDING,
                }
                for entry in schedule
            ])

            if request.down_payment > 0:
                share = request.down_payment / len(movement_ids)
                for item in request.items:
                    quantity = stock[item.product_id]["quantity"]
                    await movements.insert_one({
                        "movement_id": str(uuid.uuid4()),
                        "product_id": item.product_id,
                        "customer_id": request.customer_id,
                        "type": MovementType.ENTRADA.value,
                        "quantity": 0,
                        "previous_quantity": quantity,
                        "new_quantity": quantity,
                        "price": share,
                        "total_price": share,
                        "total_revenue": share,
                        "sale_group_id": sale_group_id,
                        "notes": f"Entrada - Venda parcelada (Parcela 0/{request.installments_count})",
                    })

            await installments.update_many(
                {"sale_group_id": sale_group_id, "commit_state": PENDING},
                {"$set": {"commit_state": COMMITTED}}
            )
    except Exception:
        logger.error("Sale %s failed for tenant %s; rolling back", sale_group_id, scope.tenant_id, exc_info=True)
        await _rollback_sale(scope, sale_group_id, decremented)
        raise

    await create_audit_log(
        action=AuditAction.SALE_CREATED,
        actor_id=scope.tenant_id,
        tenant_id=scope.tenant_id,
        resource_type="sale",
        resource_id=sale_group_id,
        metadata={
            "items": len(request.items),
            "total": total,
            "payment_method": request.payment_method.value if request.payment_method else None,
            "installments": len(schedule),
        }
    )
    logger.info("Sale %s created for tenant %s: items=%s installments=%s",
                sale_group_id, scope.tenant_id, len(request.items), len(schedule))

    return {
        "sale_group_id": sale_group_id,
        "total": total,
        "movement_ids": movement_ids,
        "installments_created": len(schedule),
    }


async def _rollback_sale(scope: TenantScope, sale_group_id: str, decremented: List[tuple]) -> None:
    await scope.collection("payment_installments").delete_many({"sale_group_id": sale_group_id})
    await scope.collection("movements").delete_many({"sale_group_id": sale_group_id})
    products = scope.collection("products")
    for product_id, quantity in decremented:
        await products.update_one({"product_id": product_id}, {"$inc": {"quantity": quantity}})


# ============================================================================
# INSTALLMENTS
# ============================================================================

async def list_customer_installments(scope: TenantScope, customer_id: str) -> List[Dict[str, Any]]:
    await scope.collection("customers").get_or_404(customer_id, message="Customer not found")
    cursor = scope.collection("payment_installments").find(
        {"customer_id": customer_id, "commit_state": COMMITTED}
    ).sort([("due_date", 1), ("installment_number", 1)])
    return await cursor.to_list(length=1000)


async def pay_installment(scope: TenantScope, request: PayInstallmentRequest) -> Dict[str, Any]:
    """Record a (possibly partial) payment against an installment."""
    installments = scope.collection("payment_installments")
    installment = await installments.find_one(
        {"installment_id": request.installment_id, "commit_state": COMMITTED}
    )
    if not installment:
        raise NotFound("Installment not found")
    if installment.get("is_paid"):
        raise Conflict("Installment is already paid", error_code="INSTALLMENT_ALREADY_PAID")

    paid_date = request.paid_date or datetime.now(timezone.utc)
    await installments.update_one(
        {"installment_id": request.installment_id},
        {
            "$inc": {"paid_amount": request.paid_amount},
            "$set": {"paid_date": paid_date, "notes": request.notes or installment.get("notes")},
        }
    )
    updated = await installments.find_one({"installment_id": request.installment_id})
    if updated["paid_amount"] >= updated["amount"] and not updated.get("is_paid"):
        await installments.update_one({"installment_id": request.installment_id}, {"$set": {"is_paid": True}})
        updated["is_paid"] = True

    # Received revenue, stock unchanged
    movement = await scope.collection("movements").find_one({"movement_id": installment.get("movement_id")})
    if movement and movement.get("product_id"):
        product = await scope.collection("products").find_one({"product_id": movement["product_id"]})
        quantity = product.get("quantity", 0) if product else 0
        suffix = f" - {request.notes}" if request.notes else ""
        await scope.collection("movements").insert_one({
            "movement_id": str(uuid.uuid4()),
            "product_id": movement["product_id"],
            "customer_id": installment.get("customer_id"),
            "type": MovementType.ENTRADA.value,
            "quantity": 0,
            "previous_quantity": quantity,
            "new_quantity": quantity,
            "price": request.paid_amount,
            "total_price": request.paid_amount,
            "total_revenue": request.paid_amount,
            "notes": (f"Pagamento de parcela {installment['installment_number']}/"
                      f"{installment['total_installments']} - Venda parcelada{suffix}"),
        })

    await create_audit_log(
        action=AuditAction.INSTALLMENT_PAID,
        actor_id=scope.tenant_id,
        tenant_id=scope.tenant_id,
        resource_type="payment_installment",
        resource_id=request.installment_id,
        metadata={"paid_amount": request.paid_amount, "is_paid": updated["is_paid"]},
    )
    return updated
