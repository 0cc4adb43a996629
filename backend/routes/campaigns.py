from fastapi import APIRouter, Depends

from middleware import require_feature
from models import CampaignRequest, Feature
from services.records import create_record, delete_record, get_record, list_records, update_record
from services.tenant_store import TenantScope

router = APIRouter(prefix="/api/campaigns", tags=["campaigns"])

campaigns_guard = require_feature(Feature.CAMPAIGNS)


@router.get("")
async def list_campaigns(scope: TenantScope = Depends(campaigns_guard)):
    return await list_records(scope, "campaigns", limit=500)


@router.post("", status_code=201)
async def create_campaign(body: CampaignRequest, scope: TenantScope = Depends(campaigns_guard)):
    return await create_record(scope, "campaigns", body.model_dump())


@router.get("/{campaign_id}")
async def get_campaign(campaign_id: str, scope: TenantScope = Depends(campaigns_guard)):
    campaign = await get_record(scope, "campaigns", campaign_id)
    sales = await scope.collection("movements").find(
        {"campaign_id": campaign_id, "type": "saida"}, {"quantity": 1, "total_revenue": 1}
    ).to_list(length=10000)
    campaign["items_sold"] = sum(m.get("quantity", 0) for m in sales)
    campaign["revenue"] = sum(m.get("total_revenue") or 0 for m in sales)
    return campaign


@router.put("/{campaign_id}")
async def update_campaign(campaign_id: str, body: CampaignRequest, scope: TenantScope = Depends(campaigns_guard)):
    return await update_record(scope, "campaigns", campaign_id, body.model_dump())


@router.delete("/{campaign_id}")
async def delete_campaign(campaign_id: str, scope: TenantScope = Depends(campaigns_guard)):
    return await delete_record(scope, "campaigns", campaign_id)
