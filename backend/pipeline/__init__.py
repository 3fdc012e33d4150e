# Order Lifecycle & Digital Fulfillment Engine
# ============================================
# Identity resolution, order expansion, fulfillment state machine,
# secret field gating and the payment gateway adapter.

from .errors import (
    StorefrontError,
    ValidationError,
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ConflictError,
    InvalidTransitionError,
    OrderCreationError,
    PersistenceError,
    GatewayError,
)
from .models import (
    Account,
    Caller,
    CartItem,
    DeliveredContent,
    Order,
    OrderStatus,
    PaymentStatus,
    Product,
    Role,
    Variant,
)
from .identity_resolver import IdentityResolver
from .order_factory import OrderFactory, OrderBatch, generate_transaction_id
from .fulfillment import FulfillmentStateMachine, FulfillmentEvent, plan_transition
from .payment_gateway import (
    PaymentGatewayAdapter,
    HttpPaymentGatewayClient,
    IPaymentGatewayClient,
    PaymentConfirmation,
    verify_signature,
)
from .storefront import Storefront, CheckoutSubmission, CheckoutResult

__all__ = [
    # Errors
    "StorefrontError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "InvalidTransitionError",
    "OrderCreationError",
    "PersistenceError",
    "GatewayError",
    # Models
    "Account",
    "Caller",
    "CartItem",
    "DeliveredContent",
    "Order",
    "OrderStatus",
    "PaymentStatus",
    "Product",
    "Role",
    "Variant",
    # Components
    "IdentityResolver",
    "OrderFactory",
    "OrderBatch",
    "generate_transaction_id",
    "FulfillmentStateMachine",
    "FulfillmentEvent",
    "plan_transition",
    "PaymentGatewayAdapter",
    "HttpPaymentGatewayClient",
    "IPaymentGatewayClient",
    "PaymentConfirmation",
    "verify_signature",
    # Facade
    "Storefront",
    "CheckoutSubmission",
    "CheckoutResult",
]
