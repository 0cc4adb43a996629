"""Current tenant: profile, password, entitlement, onboarding tutorial flag."""
from fastapi import APIRouter, Depends
from pymongo.errors import DuplicateKeyError
from auth import hash_password, validate_password_strength, verify_password
from database import database
from errors import Conflict, ValidationFailed
from middleware import tenant_route_guard
from models import AuditAction, PasswordChangeRequest, ProfileUpdateRequest, TutorialRequest
from services.entitlements import derive_entitlement, entitlement_service
from services.tenant_store import TenantScope
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/user", tags=["user"])

PROFILE_FIELDS = {"tenant_id": 1, "email": 1, "name": 1, "tutorial_completed": 1, "created_at": 1}


@router.get("/me")
async def get_me(scope: TenantScope = Depends(tenant_route_guard)):
    tenant = await scope.get_tenant(PROFILE_FIELDS)
    return {**tenant, "entitlement": scope.entitlement.to_dict()}


@router.patch("/profile")
async def update_profile(body: ProfileUpdateRequest, scope: TenantScope = Depends(tenant_route_guard)):
    """Change the account name and/or login email."""
    changes = {}
    if body.name is not None:
        if not body.name.strip():
            raise ValidationFailed.for_field("name", "Name cannot be blank")
        changes["name"] = body.name.strip()
    if body.email is not None:
        email = body.email.lower()
        db = database.get_db()
        owner = await db.tenants.find_one({"email": email}, {"_id": 0, "tenant_id": 1})
        if owner and owner["tenant_id"] != scope.tenant_id:
            raise Conflict("An account with this email already exists", error_code="EMAIL_TAKEN")
        changes["email"] = email

    before = await scope.get_tenant(PROFILE_FIELDS)
    if changes:
        try:
            await scope.update_tenant(changes)
        except DuplicateKeyError:
            raise Conflict("An account with this email already exists", error_code="EMAIL_TAKEN")
        await create_audit_log(
            action=AuditAction.PROFILE_UPDATED,
            actor_id=scope.tenant_id,
            tenant_id=scope.tenant_id,
            before_state={k: before.get(k) for k in changes},
            after_state=changes,
        )
    return await scope.get_tenant(PROFILE_FIELDS)


@router.post("/password")
async def change_password(body: PasswordChangeRequest, scope: TenantScope = Depends(tenant_route_guard)):
    tenant = await scope.get_tenant({"password_hash": 1})
    if not tenant.get("password_hash") or not verify_password(body.current_password, tenant["password_hash"]):
        raise ValidationFailed.for_field("current_password", "Current password is incorrect")
    valid, message = validate_password_strength(body.new_password)
    if not valid:
        raise ValidationFailed.for_field("new_password", message)

    await scope.update_tenant({"password_hash": hash_password(body.new_password)})
    await create_audit_log(
        action=AuditAction.PASSWORD_CHANGED,
        actor_id=scope.tenant_id,
        tenant_id=scope.tenant_id,
    )
    logger.info(f"Password changed for tenant {scope.tenant_id}")
    return {"success": True}


@router.get("/entitlement")
async def get_entitlement(scope: TenantScope = Depends(tenant_route_guard)):
    """Entitlement from the tenant store, not the session snapshot."""
    tenant = await scope.get_tenant()
    return derive_entitlement(tenant).to_dict()


@router.post("/tutorial")
async def set_tutorial(body: TutorialRequest, scope: TenantScope = Depends(tenant_route_guard)):
    await scope.update_tenant({"tutorial_completed": body.completed})
    entitlement_service.cache.invalidate(scope.tenant_id)
    return {"success": True, "completed": body.completed}
