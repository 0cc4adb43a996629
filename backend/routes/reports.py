from fastapi import APIRouter, Depends
from datetime import date
from typing import Optional

from errors import ValidationFailed
from middleware import require_feature
from models import Feature
from services.reports_service import build_summary
from services.tenant_store import TenantScope

router = APIRouter(prefix="/api/reports", tags=["reports"])


@router.get("/summary")
async def get_summary(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    supplier_id: Optional[str] = None,
    product_id: Optional[str] = None,
    scope: TenantScope = Depends(require_feature(Feature.REPORTS)),
):
    if start_date and end_date and end_date < start_date:
        raise ValidationFailed.for_field("end_date", "end_date must not be before start_date")
    return await build_summary(scope, start_date, end_date, supplier_id, product_id)
