"""
Secret Field Gate
=================
Projection applied at every read boundary. Decides, per caller, which
restricted fields leave the service:

- Product `accessLink` / `accessNote`: admins only, whatever the order state.
- Order `deliveredContent`: only once the order is `completed`, and only to
  the owning account or an admin.
- Orders of other accounts are not readable at all by non-admins.
"""

from typing import Optional

from .errors import AuthenticationError, AuthorizationError
from .models import Account, Caller, Order, OrderStatus, Product

PRODUCT_SECRET_FIELDS = {"access_link", "access_note"}


def project_product(product: Product, caller: Caller) -> dict:
    if caller.is_admin:
        return product.to_wire()
    return product.to_wire(exclude=PRODUCT_SECRET_FIELDS)


def product_summary(product: Product, caller: Caller) -> dict:
    """Compact public view embedded in order listings."""
    view = project_product(product, caller)
    return {key: view[key] for key in ("productId", "title", "salePrice") if key in view}


def can_read_order(order: Order, caller: Caller) -> bool:
    if caller.is_admin:
        return True
    return not caller.is_anonymous and order.account_id == caller.account_id


def ensure_can_read(order: Order, caller: Caller) -> None:
    if caller.is_anonymous:
        raise AuthenticationError("Sign in to view orders")
    if not can_read_order(order, caller):
        raise AuthorizationError("Not your order", details={"orderId": order.order_id})


def project_order(order: Order, caller: Caller) -> dict:
    ensure_can_read(order, caller)
    view = order.to_wire(exclude={"delivered_content"})
    if order.status == OrderStatus.COMPLETED and not order.delivered_content.is_empty:
        view["deliveredContent"] = order.delivered_content.to_wire(exclude_none=True)
    return view


def project_orders(orders: list[Order], caller: Caller) -> list[dict]:
    """Readable orders only; anything else is dropped from the listing."""
    return [project_order(o, caller) for o in orders if can_read_order(o, caller)]


def listing_scope(caller: Caller) -> Optional[str]:
    """Owner filter for order listings: None means all orders (admin)."""
    if caller.is_anonymous:
        raise AuthenticationError("Sign in to view orders")
    if caller.is_admin:
        return None
    return caller.account_id


def account_summary(account: Account) -> dict:
    return {"accountId": account.account_id, "name": account.name, "email": account.email}
