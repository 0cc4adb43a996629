"""Inventory and sales summary for a tenant over a date range."""
from datetime import datetime, time, timezone, date as date_cls
from typing import Any, Dict, List, Optional

from models import MovementType
from services.tenant_store import TenantScope


def day_range(start: date_cls, end: date_cls) -> Dict[str, datetime]:
    return {
        "$gte": datetime.combine(start, time.min, tzinfo=timezone.utc),
        "$lte": datetime.combine(end, time.max, tzinfo=timezone.utc),
    }


def summarize(movements: List[Dict[str, Any]], products: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Pure aggregation over already-scoped movements and products."""
    cost_by_product = {p["product_id"]: p.get("cost_price") or 0 for p in products}
    names = {p["product_id"]: p.get("name") for p in products}

    total_spent = 0.0
    total_revenue = 0.0
    cost_of_sales = 0.0
    items_sold = 0
    sale_groups = set()
    revenue_by_product: Dict[str, float] = {}

    for movement in movements:
        kind = movement.get("type")
        quantity = movement.get("quantity") or 0
        revenue = movement.get("total_revenue") or 0
        if kind == MovementType.ENTRADA.value:
            if quantity > 0:
                # Stock purchase
                total_spent += movement.get("total_price") or (movement.get("price") or 0) * quantity
            else:
                # Installment or down payment received
                total_revenue += revenue
        elif kind == MovementType.SAIDA.value:
            items_sold += quantity
            total_revenue += revenue
            cost_of_sales += cost_by_product.get(movement.get("product_id"), 0) * quantity
            sale_groups.add(movement.get("sale_group_id") or movement.get("movement_id"))
        if revenue and movement.get("product_id"):
            pid = movement["product_id"]
            revenue_by_product[pid] = revenue_by_product.get(pid, 0) + revenue

    top = sorted(revenue_by_product.items(), key=lambda kv: kv[1], reverse=True)[:10]
    return {
        "total_spent": round(total_spent, 2),
        "total_revenue": round(total_revenue, 2),
        "cost_of_sales": round(cost_of_sales, 2),
        "gross_profit": round(total_revenue - cost_of_sales, 2),
        "sales_count": len(sale_groups),
        "items_sold": items_sold,
        "stock_value": round(sum((p.get("cost_price") or 0) * (p.get("quantity") or 0) for p in products), 2),
        "low_stock_products": sum(1 for p in products if (p.get("quantity") or 0) <= (p.get("min_quantity") or 0)),
        "top_products": [{"product_id": pid, "name": names.get(pid), "revenue": round(value, 2)} for pid, value in top],
    }


async def build_summary(
    scope: TenantScope,
    start: Optional[date_cls] = None,
    end: Optional[date_cls] = None,
    supplier_id: Optional[str] = None,
    product_id: Optional[str] = None,
) -> Dict[str, Any]:
    filter: Dict[str, Any] = {}
    if start and end:
        filter["created_at"] = day_range(start, end)
    elif start:
        filter["created_at"] = day_range(start, start)
    if supplier_id:
        filter["supplier_id"] = supplier_id
    if product_id:
        filter["product_id"] = product_id

    movements = await scope.collection("movements").find(filter).to_list(length=50000)
    products = await scope.collection("products").find(
        {}, {"product_id": 1, "name": 1, "cost_price": 1, "quantity": 1, "min_quantity": 1}
    ).to_list(length=50000)

    summary = summarize(movements, products)
    summary["period"] = {
        "start": start.isoformat() if start else None,
        "end": (end or start).isoformat() if start else None,
    }
    return summary
