from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class Plan(str, Enum):
    STARTER = "starter"
    PREMIUM = "premium"

class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"

class EffectiveStatus(str, Enum):
    """Read-time status; EXPIRED and NONE never appear in stored documents."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    EXPIRED = "expired"
    NONE = "none"

class Feature(str, Enum):
    # Starter
    PRODUCTS = "products"
    SUPPLIERS = "suppliers"
    MOVEMENTS = "movements"
    REPORTS = "reports"
    # Premium
    CUSTOMERS = "customers"
    STOREFRONT = "storefront"
    CAMPAIGNS = "campaigns"
    INSTALLMENTS = "installments"

class MovementType(str, Enum):
    ENTRADA = "entrada"
    SAIDA = "saida"
    AJUSTE = "ajuste"

class PaymentMethod(str, Enum):
    CARTAO_CREDITO = "cartao_credito"
    CARTAO_DEBITO = "cartao_debito"
    PIX = "pix"
    PIX_PARCELADO = "pix_parcelado"

class DiscountType(str, Enum):
    PERCENT = "percent"
    FIXED = "fixed"

class DeviceType(str, Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"
    TABLET = "tablet"

class AnalyticsEventType(str, Enum):
    PAGE_VIEW = "page_view"
    PRODUCT_VIEW = "product_view"
    PRODUCT_SELECT = "product_select"
    PRODUCT_UNSELECT = "product_unselect"
    FILTER_USED = "filter_used"
    WHATSAPP_CLICK = "whatsapp_click"
    IMAGE_EXPAND = "image_expand"
    SESSION_END = "session_end"

class AuditAction(str, Enum):
    # Auth
    TENANT_REGISTERED = "TENANT_REGISTERED"
    USER_LOGIN_SUCCESS = "USER_LOGIN_SUCCESS"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"

    # Billing
    BILLING_EVENT_APPLIED = "BILLING_EVENT_APPLIED"
    BILLING_EVENT_DISCARDED = "BILLING_EVENT_DISCARDED"
    CHECKOUT_STARTED = "CHECKOUT_STARTED"
    SUBSCRIPTION_CANCEL_REQUESTED = "SUBSCRIPTION_CANCEL_REQUESTED"
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"

    # Gating
    ENTITLEMENT_DENIED = "ENTITLEMENT_DENIED"

    # Records
    RECORD_CREATED = "RECORD_CREATED"
    RECORD_UPDATED = "RECORD_UPDATED"
    RECORD_DELETED = "RECORD_DELETED"
    SALE_CREATED = "SALE_CREATED"
    INSTALLMENT_PAID = "INSTALLMENT_PAID"
    STORE_PUBLISHED = "STORE_PUBLISHED"
    MOVEMENT_ASSIGNED = "MOVEMENT_ASSIGNED"

    # Account
    PROFILE_UPDATED = "PROFILE_UPDATED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"

# ============================================================================
# CORE MODELS
# ============================================================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    tenant_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

class BillingEvent(BaseModel):
    """Normalized provider event. Carries terminal state, never deltas."""
    model_config = ConfigDict(extra="ignore")

    customer_ref: str
    status: SubscriptionStatus
    plan: Optional[Plan] = None  # None = plan unchanged
    current_period_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    subscription_ref: Optional[str] = None
    event_sequence: int
    event_id: Optional[str] = None
    event_type: Optional[str] = None

# ============================================================================
# REQUEST MODELS
# ============================================================================

class RegisterRequest(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    password: str

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]

class TutorialRequest(BaseModel):
    completed: bool

class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[EmailStr] = None

class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str

class ProductRequest(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    sku: Optional[str] = None
    category: Optional[str] = None
    supplier_id: Optional[str] = None
    cost_price: float = Field(ge=0)
    sale_price: float = Field(ge=0)
    quantity: int = Field(default=0, ge=0)
    min_quantity: int = Field(default=0, ge=0)
    size: Optional[str] = None
    color: Optional[str] = None
    brand: Optional[str] = None
    image_url: Optional[str] = None
    gender: Optional[str] = None

    @field_validator("sku")
    @classmethod
    def blank_sku_is_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v.strip() if v else v

    @field_validator("gender")
    @classmethod
    def known_gender(cls, v):
        if v is not None and v not in ("masculino", "feminino", "unissex"):
            raise ValueError("gender must be masculino, feminino or unissex")
        return v

class SupplierRequest(BaseModel):
    name: str = Field(min_length=1)
    cnpj: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    notes: Optional[str] = None

class ChildRequest(BaseModel):
    name: str = Field(min_length=1)
    age: Optional[int] = Field(default=None, ge=0)
    sizes: List[str] = Field(default_factory=list)
    gender: Optional[str] = None
    birthday: Optional[datetime] = None

class CustomerRequest(BaseModel):
    name: str = Field(min_length=1)
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    instagram: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    children: List[ChildRequest] = Field(default_factory=list)

class CampaignRequest(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None

class MovementRequest(BaseModel):
    product_id: str
    type: MovementType
    quantity: int = Field(ge=0)
    price: Optional[float] = Field(default=None, ge=0)
    supplier_id: Optional[str] = None
    notes: Optional[str] = None

class SaleItem(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)
    sale_price: float = Field(ge=0)
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(default=None, ge=0)

class SaleRequest(BaseModel):
    items: List[SaleItem] = Field(min_length=1)
    customer_id: Optional[str] = None
    campaign_id: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    installments_count: Optional[int] = Field(default=None, ge=1)
    installment_due_date: Optional[datetime] = None
    down_payment: float = Field(default=0, ge=0)
    notes: Optional[str] = None

class PayInstallmentRequest(BaseModel):
    installment_id: str
    paid_amount: float = Field(gt=0)
    paid_date: Optional[datetime] = None
    notes: Optional[str] = None

class PublicStoreRequest(BaseModel):
    slug: str = Field(pattern=r"^[a-z0-9-]+$")
    title: str = Field(min_length=1)
    description: Optional[str] = None
    whatsapp_message: str = Field(min_length=1)
    phone: str = Field(pattern=r"^\d+$")
    selected_products: List[str] = Field(default_factory=list)
    is_active: bool = True
    background_color: Optional[str] = None
    logo_url: Optional[str] = None

    @field_validator("slug", mode="before")
    @classmethod
    def normalize_slug(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

class PublicStoreUpdateRequest(BaseModel):
    """Slug is immutable once created and therefore absent here."""
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    whatsapp_message: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = Field(default=None, pattern=r"^\d+$")
    selected_products: Optional[List[str]] = None
    is_active: Optional[bool] = None
    background_color: Optional[str] = None
    logo_url: Optional[str] = None

class StoreAnalyticsEventRequest(BaseModel):
    store_id: str
    session_id: str = Field(min_length=1, max_length=128)
    event_type: AnalyticsEventType
    data: Dict[str, Any] = Field(default_factory=dict)

class CheckoutRequest(BaseModel):
    plan: Plan

class CancelRequest(BaseModel):
    cancel_immediately: bool = False
