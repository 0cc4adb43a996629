from fastapi import APIRouter, Depends, Query
from typing import Optional
import re

from middleware import require_feature
from models import CustomerRequest, Feature
from services.customers_service import attach_movement, list_birthdays, top_customers
from services.records import create_record, delete_record, get_record, list_records, update_record
from services.sales_service import list_customer_installments
from services.tenant_store import TenantScope

router = APIRouter(prefix="/api/customers", tags=["customers"])

customers_guard = require_feature(Feature.CUSTOMERS)


@router.get("")
async def list_customers(
    q: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    scope: TenantScope = Depends(customers_guard),
):
    filter = {}
    if q:
        pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
        filter["$or"] = [{"name": pattern}, {"phone": pattern}, {"email": pattern}]
    return await list_records(scope, "customers", filter, sort=[("name", 1)], skip=skip, limit=limit)


@router.post("", status_code=201)
async def create_customer(body: CustomerRequest, scope: TenantScope = Depends(customers_guard)):
    return await create_record(scope, "customers", body.model_dump())


@router.get("/birthdays")
async def get_birthdays(scope: TenantScope = Depends(customers_guard)):
    """Customers' children with a birthday this month."""
    return {"children": await list_birthdays(scope)}


@router.get("/top")
async def get_top_customers(
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    scope: TenantScope = Depends(customers_guard),
):
    return {"top_customers": await top_customers(scope, month=month, year=year)}


@router.get("/{customer_id}")
async def get_customer(customer_id: str, scope: TenantScope = Depends(customers_guard)):
    return await get_record(scope, "customers", customer_id)


@router.get("/{customer_id}/installments")
async def get_customer_installments(customer_id: str, scope: TenantScope = Depends(customers_guard)):
    """Committed installments for the customer, pending and paid, by due date."""
    return await list_customer_installments(scope, customer_id)


@router.put("/{customer_id}")
async def update_customer(customer_id: str, body: CustomerRequest, scope: TenantScope = Depends(customers_guard)):
    return await update_record(scope, "customers", customer_id, body.model_dump())


@router.delete("/{customer_id}")
async def delete_customer(customer_id: str, scope: TenantScope = Depends(customers_guard)):
    return await delete_record(scope, "customers", customer_id)


@router.post("/{customer_id}/movements/{movement_id}")
async def assign_movement(customer_id: str, movement_id: str, scope: TenantScope = Depends(customers_guard)):
    """Attach a sale recorded without a customer."""
    return await attach_movement(scope, customer_id, movement_id)
