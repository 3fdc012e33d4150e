"""
Persistence Interfaces
======================
Abstract repositories for accounts, products, orders and the audit trail,
plus in-memory implementations. The PostgreSQL implementations live in
`database.py` and can be swapped in without touching the pipeline.

Contract shared by every implementation:
- `create` / `update_phone` raise `ConflictError` on an email or phone
  uniqueness violation.
- `save_if_version` is a compare-and-set on `Order.version`.
- Any other store failure surfaces as `PersistenceError`.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Iterable, List, Optional

from .errors import ConflictError
from .models import Account, AuditLogEntry, Order, Product, utcnow


# =============================================================================
# INTERFACES
# =============================================================================

class IAccountRepository(ABC):

    @abstractmethod
    async def get(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def find_by_email_or_phone(
        self, email: Optional[str], phone: Optional[str]
    ) -> Optional[Account]:
        """Account matching `email`, else the one matching `phone`."""
        pass

    @abstractmethod
    async def create(self, account: Account) -> Account:
        pass

    @abstractmethod
    async def update_phone(self, account_id: str, phone: str) -> Account:
        pass


class IProductRepository(ABC):

    @abstractmethod
    async def get(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def save(self, product: Product) -> Product:
        pass


class IOrderRepository(ABC):

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def create(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def save_if_version(self, order: Order, expected_version: int) -> bool:
        """Persist `order` only if the stored version still equals `expected_version`."""
        pass

    @abstractmethod
    async def list(self, account_id: Optional[str] = None) -> List[Order]:
        """Orders newest first, optionally restricted to one owner."""
        pass

    @abstractmethod
    async def list_by_transaction(self, transaction_id: str) -> List[Order]:
        pass

    @abstractmethod
    async def delete(self, order_id: str) -> bool:
        pass


class IAuditLog(ABC):

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryAccountRepository(IAccountRepository):
    """Account store enforcing email/phone uniqueness under one lock"""

    def __init__(self, accounts: Optional[Iterable[Account]] = None):
        self._accounts: dict[str, Account] = {a.account_id: a for a in accounts or ()}
        self._lock = asyncio.Lock()

    async def get(self, account_id: str) -> Optional[Account]:
        async with self._lock:
            return self._accounts.get(account_id)

    async def find_by_email_or_phone(
        self, email: Optional[str], phone: Optional[str]
    ) -> Optional[Account]:
        async with self._lock:
            # Email is the identity-defining field; it wins over a phone match
            if email:
                account = self._claimed_by("email", email)
                if account:
                    return account
            if phone:
                return self._claimed_by("phone", phone)
            return None

    def _claimed_by(self, field: str, value: str) -> Optional[Account]:
        for account in self._accounts.values():
            if getattr(account, field) == value:
                return account
        return None

    async def create(self, account: Account) -> Account:
        async with self._lock:
            if self._claimed_by("email", account.email):
                raise ConflictError("Email already registered", field="email")
            if account.phone and self._claimed_by("phone", account.phone):
                raise ConflictError("Phone already registered", field="phone")
            self._accounts[account.account_id] = account
            return account

    async def update_phone(self, account_id: str, phone: str) -> Account:
        async with self._lock:
            owner = self._claimed_by("phone", phone)
            if owner and owner.account_id != account_id:
                raise ConflictError("Phone already registered", field="phone")
            account = self._accounts[account_id]
            updated = account.model_copy(update={"phone": phone, "updated_at": utcnow()})
            self._accounts[account_id] = updated
            return updated


class InMemoryProductRepository(IProductRepository):

    def __init__(self, products: Optional[Iterable[Product]] = None):
        self._products: dict[str, Product] = {p.product_id: p for p in products or ()}
        self._lock = asyncio.Lock()

    async def get(self, product_id: str) -> Optional[Product]:
        async with self._lock:
            return self._products.get(product_id)

    async def save(self, product: Product) -> Product:
        async with self._lock:
            self._products[product.product_id] = product
            return product


class InMemoryOrderRepository(IOrderRepository):
    """Order store with compare-and-set updates and a transaction index"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._by_transaction: dict[str, set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def create(self, order: Order) -> Order:
        async with self._lock:
            self._orders[order.order_id] = order
            self._by_transaction[order.transaction_id].add(order.order_id)
            return order

    async def save_if_version(self, order: Order, expected_version: int) -> bool:
        async with self._lock:
            current = self._orders.get(order.order_id)
            if current is None or current.version != expected_version:
                return False
            self._orders[order.order_id] = order
            return True

    async def list(self, account_id: Optional[str] = None) -> List[Order]:
        async with self._lock:
            orders = [
                o for o in self._orders.values()
                if account_id is None or o.account_id == account_id
            ]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def list_by_transaction(self, transaction_id: str) -> List[Order]:
        async with self._lock:
            orders = [self._orders[oid] for oid in self._by_transaction.get(transaction_id, ())]
        return sorted(orders, key=lambda o: o.created_at)

    async def delete(self, order_id: str) -> bool:
        async with self._lock:
            order = self._orders.pop(order_id, None)
            if order is None:
                return False
            self._by_transaction[order.transaction_id].discard(order_id)
            return True


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))
