"""Owner management of the tenant's public storefront (one per tenant)."""
from fastapi import APIRouter, Depends

from middleware import require_feature
from models import Feature, PublicStoreRequest, PublicStoreUpdateRequest
from services import storefront_service
from services.tenant_store import TenantScope

router = APIRouter(prefix="/api/store", tags=["store"])

storefront_guard = require_feature(Feature.STOREFRONT)


@router.get("")
async def get_store(scope: TenantScope = Depends(storefront_guard)):
    return await storefront_service.get_own_store(scope)


@router.post("", status_code=201)
async def create_store(body: PublicStoreRequest, scope: TenantScope = Depends(storefront_guard)):
    return await storefront_service.create_store(scope, body)


@router.patch("")
async def update_store(body: PublicStoreUpdateRequest, scope: TenantScope = Depends(storefront_guard)):
    return await storefront_service.update_store(scope, body)


@router.delete("")
async def delete_store(scope: TenantScope = Depends(storefront_guard)):
    return await storefront_service.delete_store(scope)


@router.get("/analytics")
async def get_analytics(scope: TenantScope = Depends(storefront_guard)):
    return await storefront_service.get_analytics_summary(scope)


@router.delete("/analytics")
async def clear_analytics(scope: TenantScope = Depends(storefront_guard)):
    return await storefront_service.clear_analytics(scope)
