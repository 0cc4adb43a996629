from fastapi import APIRouter, Depends

from middleware import require_feature
from models import Feature, PayInstallmentRequest
from services.sales_service import pay_installment
from services.tenant_store import TenantScope

router = APIRouter(prefix="/api/installments", tags=["installments"])


@router.post("/pay")
async def pay(body: PayInstallmentRequest, scope: TenantScope = Depends(require_feature(Feature.INSTALLMENTS))):
    installment = await pay_installment(scope, body)
    return {"success": True, "installment": installment}
