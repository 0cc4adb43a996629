from fastapi import Request, Depends
from typing import Optional
import logging
from auth import decode_access_token
from errors import EntitlementDenied, Unauthenticated
from models import AuditAction, Feature
from services.entitlements import EntitlementSnapshot, derive_entitlement, entitlement_service
from services.tenant_store import TenantScope
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current session claims from the JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ", 1)[1]
    payload = decode_access_token(token)

    if not payload:
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user or not user.get("tenant_id"):
        raise Unauthenticated()
    return user

async def tenant_route_guard(request: Request) -> TenantScope:
    """Guard for tenant routes - builds the tenant scope from the session.

    The entitlement snapshot embedded in the token is used while fresh;
    otherwise it is refreshed from the tenant store.
    """
    user = await require_auth(request)
    tenant_id = user["tenant_id"]

    claimed = EntitlementSnapshot.from_claims(tenant_id, user.get("entitlement"))
    snapshot = await entitlement_service.resolve(tenant_id, claimed)
    if snapshot is None:
        # Token for a tenant that no longer exists
        raise Unauthenticated("Account not found")

    request.state.tenant_id = tenant_id
    return TenantScope(
        tenant_id=tenant_id,
        email=user.get("email"),
        snapshot=snapshot,
        entitlement=derive_entitlement(snapshot),
    )

def require_feature(feature: Feature):
    """
    Dependency enforcing plan-based feature access on top of the tenant guard.

    Usage:
        @router.post("/customers")
        async def create_customer(scope: TenantScope = Depends(require_feature(Feature.CUSTOMERS))):
            ...
    """
    async def feature_guard(request: Request, scope: TenantScope = Depends(tenant_route_guard)) -> TenantScope:
        try:
            scope.check(feature)
        except EntitlementDenied as e:
            await log_entitlement_denied(scope, request, feature, e)
            raise
        return scope

    return feature_guard

async def log_entitlement_denied(scope: TenantScope, request: Request, feature: Feature, error: EntitlementDenied):
    """Log feature gate denial for audit."""
    logger.warning(
        "Feature access denied: tenant_id=%s plan=%s effective_status=%s requested_feature=%s endpoint=%s method=%s",
        scope.tenant_id, error.details.get("current_plan"), error.details.get("effective_status"),
        feature.value, request.url.path, request.method
    )
    await create_audit_log(
        action=AuditAction.ENTITLEMENT_DENIED,
        actor_id=scope.tenant_id,
        tenant_id=scope.tenant_id,
        metadata={
            "feature": feature.value,
            "required_plan": error.details.get("required_plan"),
            "effective_status": error.details.get("effective_status"),
            "endpoint": str(request.url.path),
            "method": request.method
        }
    )
