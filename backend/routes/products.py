from fastapi import APIRouter, Depends, Query
from typing import Optional
import re
import logging

from middleware import require_feature
from models import Feature, ProductRequest
from services.records import create_record, delete_record, get_record, list_records, update_record
from services.tenant_store import TenantScope

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/products", tags=["products"])

products_guard = require_feature(Feature.PRODUCTS)


async def _check_supplier(scope: TenantScope, supplier_id: Optional[str]) -> None:
    if supplier_id:
        await scope.collection("suppliers").get_or_404(supplier_id, message="Supplier not found")


@router.get("")
async def list_products(
    q: Optional[str] = None,
    supplier_id: Optional[str] = None,
    low_stock: bool = False,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    scope: TenantScope = Depends(products_guard),
):
    filter = {}
    if q:
        pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
        filter["$or"] = [{"name": pattern}, {"sku": pattern}, {"brand": pattern}]
    if supplier_id:
        filter["supplier_id"] = supplier_id
    if low_stock:
        filter["$expr"] = {"$lte": ["$quantity", "$min_quantity"]}
    return await list_records(scope, "products", filter, sort=[("name", 1)], skip=skip, limit=limit)


@router.post("", status_code=201)
async def create_product(body: ProductRequest, scope: TenantScope = Depends(products_guard)):
    await _check_supplier(scope, body.supplier_id)
    return await create_record(scope, "products", body.model_dump())


@router.get("/{product_id}")
async def get_product(product_id: str, scope: TenantScope = Depends(products_guard)):
    return await get_record(scope, "products", product_id)


@router.put("/{product_id}")
async def update_product(product_id: str, body: ProductRequest, scope: TenantScope = Depends(products_guard)):
    await _check_supplier(scope, body.supplier_id)
    return await update_record(scope, "products", product_id, body.model_dump())


@router.delete("/{product_id}")
async def delete_product(product_id: str, scope: TenantScope = Depends(products_guard)):
    result = await delete_record(scope, "products", product_id)
    # Unpublish from the tenant's storefront
    await scope.collection("public_stores").update_many(
        {"selected_products": product_id},
        {"$pull": {"selected_products": product_id}}
    )
    return result
