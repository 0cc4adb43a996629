from fastapi import APIRouter, Request
from pymongo.errors import DuplicateKeyError
from database import database
from errors import Conflict, RateLimited, Unauthenticated, ValidationFailed
from models import RegisterRequest, LoginRequest, TokenResponse, AuditAction, Plan, SubscriptionStatus
from auth import verify_password, hash_password, create_session_token, validate_password_strength
from services.entitlements import TRIAL_DAYS, EntitlementSnapshot, derive_entitlement
from utils.audit import create_audit_log
from utils.rate_limiter import rate_limiter
from datetime import datetime, timezone, timedelta
import logging
import uuid

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])

LOGIN_MAX_ATTEMPTS = 10
LOGIN_WINDOW_MINUTES = 15


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _session_response(tenant: dict) -> TokenResponse:
    snapshot = EntitlementSnapshot.from_tenant(tenant)
    return TokenResponse(
        access_token=create_session_token(tenant, snapshot),
        user={
            "tenant_id": tenant["tenant_id"],
            "name": tenant.get("name"),
            "email": tenant["email"],
            "tutorial_completed": tenant.get("tutorial_completed", False),
            "entitlement": derive_entitlement(snapshot).to_dict(),
        },
    )


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(request: Request, body: RegisterRequest):
    """Create a tenant on the premium trial and sign it in."""
    valid, message = validate_password_strength(body.password)
    if not valid:
        raise ValidationFailed.for_field("password", message)

    db = database.get_db()
    email = body.email.lower()
    if await db.tenants.find_one({"email": email}, {"_id": 0, "tenant_id": 1}):
        raise Conflict("An account with this email already exists", error_code="EMAIL_TAKEN")

    now = datetime.now(timezone.utc)
    tenant = {
        "tenant_id": str(uuid.uuid4()),
        "email": email,
        "name": body.name.strip(),
        "password_hash": hash_password(body.password),
        "plan": Plan.PREMIUM.value,
        "subscription_status": SubscriptionStatus.TRIALING.value,
        "trial_ends_at": now + timedelta(days=TRIAL_DAYS),
        "current_period_end": None,
        "billing_customer_ref": None,
        "billing_subscription_ref": None,
        "billing_event_sequence": None,
        "tutorial_completed": False,
        "created_at": now,
        "updated_at": now,
    }
    try:
        await db.tenants.insert_one(dict(tenant))
    except DuplicateKeyError:
        raise Conflict("An account with this email already exists", error_code="EMAIL_TAKEN")

    await create_audit_log(
        action=AuditAction.TENANT_REGISTERED,
        actor_id=tenant["tenant_id"],
        tenant_id=tenant["tenant_id"],
        ip_address=_client_ip(request),
        metadata={"email": email, "trial_days": TRIAL_DAYS},
    )
    logger.info(f"Tenant registered: {tenant['tenant_id']}")
    return _session_response(tenant)


@router.post("/login", response_model=TokenResponse)
async def login(request: Request, credentials: LoginRequest):
    """Tenant login endpoint."""
    ip = _client_ip(request)
    allowed, error_message = await rate_limiter.check_rate_limit(
        f"login:{ip}", LOGIN_MAX_ATTEMPTS, LOGIN_WINDOW_MINUTES
    )
    if not allowed:
        raise RateLimited(error_message)

    db = database.get_db()
    email = credentials.email.lower()
    tenant = await db.tenants.find_one({"email": email}, {"_id": 0})

    if not tenant:
        await create_audit_log(
            action=AuditAction.USER_LOGIN_FAILED,
            ip_address=ip,
            metadata={"email": email, "reason": "user_not_found"}
        )
        raise Unauthenticated("Invalid credentials")

    if not tenant.get("password_hash") or not verify_password(credentials.password, tenant["password_hash"]):
        await create_audit_log(
            action=AuditAction.USER_LOGIN_FAILED,
            actor_id=tenant["tenant_id"],
            tenant_id=tenant["tenant_id"],
            ip_address=ip,
            metadata={"email": email, "reason": "invalid_password"}
        )
        raise Unauthenticated("Invalid credentials")

    await db.tenants.update_one(
        {"tenant_id": tenant["tenant_id"]},
        {"$set": {"last_login": datetime.now(timezone.utc)}}
    )
    await create_audit_log(
        action=AuditAction.USER_LOGIN_SUCCESS,
        actor_id=tenant["tenant_id"],
        tenant_id=tenant["tenant_id"],
        ip_address=ip,
    )
    return _session_response(tenant)
