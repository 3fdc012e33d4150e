"""
Domain Models
=============
Accounts, products, orders and the audit trail of the order lifecycle.

Python attributes are snake_case; the wire format is camelCase
(`transactionId`, `paymentStatus`, `deliveredContent`).
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class CamelModel(BaseModel):
    """Base model serialized with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self, **kwargs) -> dict:
        return self.model_dump(mode="json", by_alias=True, **kwargs)


# =============================================================================
# ENUMS
# =============================================================================

class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.DECLINED,
})


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_DELETED = "order.deleted"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_INITIATED = "payment.initiated"
    ORDER_COMPLETED = "order.completed"
    ORDER_DECLINED = "order.declined"
    ORDER_CANCELLED = "order.cancelled"


def normalize_role(value: Optional[str]) -> Role:
    """Map legacy role spellings (`user`, `ADMIN`) onto `Role`."""
    if value and value.strip().lower() == Role.ADMIN.value:
        return Role.ADMIN
    return Role.CUSTOMER


def normalize_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().lower()
    return value or None


def normalize_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


# =============================================================================
# ACCOUNTS
# =============================================================================

class Account(CamelModel):
    """Customer or admin identity. Email and phone are globally unique."""

    account_id: str = Field(default_factory=new_id)
    name: str
    email: str
    phone: Optional[str] = None
    password_hash: str = Field(default="", exclude=True, repr=False)
    role: Role = Role.CUSTOMER
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class Caller(CamelModel):
    """The authenticated principal behind a request, passed explicitly."""

    account_id: Optional[str] = None
    role: Optional[Role] = None

    @classmethod
    def anonymous(cls) -> "Caller":
        return cls()

    @classmethod
    def for_account(cls, account: Account) -> "Caller":
        return cls(account_id=account.account_id, role=account.role)

    @property
    def is_anonymous(self) -> bool:
        return self.account_id is None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# =============================================================================
# PRODUCTS (read-only collaborator entity)
# =============================================================================

class Variant(CamelModel):
    """Alternative priced tier of a product, e.g. Gold / 1 Year."""

    name: str
    validity: str = ""
    price: float = Field(ge=0)


class Product(CamelModel):
    product_id: str = Field(default_factory=new_id)
    title: str
    slug: str = ""
    regular_price: float = Field(ge=0)
    sale_price: float = Field(ge=0)
    variants: list[Variant] = Field(default_factory=list)
    is_available: bool = True
    file_type: str = "Credentials"

    # Admin-authoring secrets, never shown to customers
    access_link: Optional[str] = None
    access_note: Optional[str] = None

    def find_variant(self, name: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.name == name:
                return variant
        return None

    def effective_price(self, variant_name: Optional[str] = None) -> Optional[float]:
        """Trusted unit price: the chosen variant's, else the sale price."""
        if variant_name:
            variant = self.find_variant(variant_name)
            return variant.price if variant else None
        return self.sale_price


# =============================================================================
# ORDERS
# =============================================================================

class DeliveredContent(CamelModel):
    """Secret payload released to the customer once an order completes."""

    account_email: Optional[str] = None
    account_password: Optional[str] = None
    access_notes: Optional[str] = None
    download_link: Optional[str] = None

    @field_validator("account_email", "account_password", "access_notes", "download_link")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @property
    def is_empty(self) -> bool:
        return not any((
            self.account_email,
            self.account_password,
            self.access_notes,
            self.download_link,
        ))


class Order(CamelModel):
    """One purchased line item with its payment and fulfillment state."""

    order_id: str = Field(default_factory=new_id)
    account_id: str
    product_id: str
    transaction_id: str
    payment_method: str = "Manual"
    quantity: int = Field(default=1, ge=1)
    variant_name: Optional[str] = None
    amount: float = Field(ge=0)

    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    delivered_content: DeliveredContent = Field(default_factory=DeliveredContent)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    version: int = 1  # Optimistic locking

    @computed_field(alias="isTerminal")
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_payable(self) -> bool:
        return self.status == OrderStatus.PENDING and self.payment_status != PaymentStatus.PAID

    def transition_to(self, **updates) -> "Order":
        """Immutable state change; bumps version and updated_at."""
        return self.model_copy(update={
            **updates,
            "updated_at": utcnow(),
            "version": self.version + 1,
        })


class CartItem(CamelModel):
    """
    One checkout line. Client-supplied price or amount fields are ignored;
    pricing is always recomputed from the trusted product record.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    product_id: str
    quantity: int = Field(default=1, ge=1, le=50)
    variant_name: Optional[str] = None


class SkippedLineItem(CamelModel):
    product_id: str
    variant_name: Optional[str] = None
    reason: str


# =============================================================================
# AUDIT
# =============================================================================

class AuditLogEntry(CamelModel):
    """Immutable audit log entry. Never carries delivered content."""

    log_id: str = Field(default_factory=new_id)
    correlation_id: str
    event_type: AuditEventType
    entity_type: str = "order"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    actor: str = "system"
    timestamp: datetime = Field(default_factory=utcnow)
