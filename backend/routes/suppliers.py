from fastapi import APIRouter, Depends, Query
from typing import Optional
import re

from middleware import require_feature
from models import Feature, SupplierRequest
from services.records import create_record, delete_record, get_record, list_records, update_record
from services.tenant_store import TenantScope

router = APIRouter(prefix="/api/suppliers", tags=["suppliers"])

suppliers_guard = require_feature(Feature.SUPPLIERS)


@router.get("")
async def list_suppliers(
    q: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    scope: TenantScope = Depends(suppliers_guard),
):
    filter = {"name": {"$regex": re.escape(q.strip()), "$options": "i"}} if q else {}
    return await list_records(scope, "suppliers", filter, sort=[("name", 1)], skip=skip, limit=limit)


@router.post("", status_code=201)
async def create_supplier(body: SupplierRequest, scope: TenantScope = Depends(suppliers_guard)):
    return await create_record(scope, "suppliers", body.model_dump())


@router.get("/{supplier_id}")
async def get_supplier(supplier_id: str, scope: TenantScope = Depends(suppliers_guard)):
    supplier = await get_record(scope, "suppliers", supplier_id)
    supplier["product_count"] = await scope.collection("products").count_documents({"supplier_id": supplier_id})
    return supplier


@router.put("/{supplier_id}")
async def update_supplier(supplier_id: str, body: SupplierRequest, scope: TenantScope = Depends(suppliers_guard)):
    return await update_record(scope, "suppliers", supplier_id, body.model_dump())


@router.delete("/{supplier_id}")
async def delete_supplier(supplier_id: str, scope: TenantScope = Depends(suppliers_guard)):
    result = await delete_record(scope, "suppliers", supplier_id)
    await scope.collection("products").update_many({"supplier_id": supplier_id}, {"$set": {"supplier_id": None}})
    return result
