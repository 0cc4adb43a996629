from fastapi import APIRouter, Depends, Query
from typing import Optional

from middleware import require_feature
from models import Feature, MovementRequest, MovementType, SaleRequest
from services.customers_service import list_available_movements
from services.records import list_records
from services.sales_service import create_sale, record_movement
from services.tenant_store import TenantScope

router = APIRouter(prefix="/api/movements", tags=["movements"])

movements_guard = require_feature(Feature.MOVEMENTS)


@router.get("")
async def list_movements(
    product_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    type: Optional[MovementType] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    scope: TenantScope = Depends(movements_guard),
):
    filter = {}
    if product_id:
        filter["product_id"] = product_id
    if customer_id:
        filter["customer_id"] = customer_id
    if type:
        filter["type"] = type.value
    return await list_records(scope, "movements", filter, skip=skip, limit=limit)


@router.get("/available")
async def get_available_movements(scope: TenantScope = Depends(movements_guard)):
    """Sales not yet attached to a customer."""
    return await list_available_movements(scope)


@router.post("", status_code=201)
async def create_movement(body: MovementRequest, scope: TenantScope = Depends(movements_guard)):
    return await record_movement(scope, body)


@router.post("/sales", status_code=201)
async def create_sale_route(body: SaleRequest, scope: TenantScope = Depends(movements_guard)):
    """Multi-item sale; installment sales additionally need the installments feature."""
    return await create_sale(scope, body)
