"""
Database Module
===============
PostgreSQL persistence for the storefront.

This module provides:
- AsyncPG connection pool with idempotent startup migrations
- Account / Product / Order repositories implementing the pipeline interfaces
- The audit log table (every order state change, keyed by transaction id)

Driver errors never leak: unique violations become `ConflictError`, every
other store failure becomes `PersistenceError`.

pip install asyncpg
"""

import json
from contextlib import asynccontextmanager
from typing import Any, List, Optional

import asyncpg
import structlog

from config import settings
from pipeline.errors import ConflictError, PersistenceError
from pipeline.models import (
    Account,
    AuditLogEntry,
    DeliveredContent,
    Order,
    Product,
    Variant,
)
from pipeline.repositories import (
    IAccountRepository,
    IAuditLog,
    IOrderRepository,
    IProductRepository,
)

logger = structlog.get_logger().bind(component="database")


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False

    @classmethod
    async def initialize(cls, dsn: Optional[str] = None):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        try:
            cls._pool = await asyncpg.create_pool(
                dsn or settings.DATABASE_URL,
                min_size=settings.DB_MIN_POOL_SIZE,
                max_size=settings.DB_MAX_POOL_SIZE,
            )
            cls._initialized = True
            logger.info("database_pool_initialized")

            await cls._run_migrations()

        except (OSError, asyncpg.PostgresError) as e:
            logger.error("database_init_failed", error=str(e))
            raise PersistenceError("Database unavailable") from e

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("database_pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            await cls.initialize()

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        migrations = [
            """
            CREATE TABLE IF NOT EXISTS accounts (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                phone TEXT UNIQUE,
                password_hash TEXT NOT NULL DEFAULT '',
                role VARCHAR(20) NOT NULL DEFAULT 'customer',
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS products (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                slug TEXT NOT NULL DEFAULT '',
                regular_price NUMERIC(12, 2) NOT NULL,
                sale_price NUMERIC(12, 2) NOT NULL,
                variants JSONB NOT NULL DEFAULT '[]',
                is_available BOOLEAN NOT NULL DEFAULT TRUE,
                file_type VARCHAR(40) NOT NULL DEFAULT 'Credentials',
                access_link TEXT,
                access_note TEXT,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL REFERENCES accounts(id),
                product_id TEXT NOT NULL,
                transaction_id TEXT NOT NULL,
                payment_method VARCHAR(40) NOT NULL DEFAULT 'Manual',
                quantity INTEGER NOT NULL DEFAULT 1,
                variant_name TEXT,
                amount NUMERIC(12, 2) NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'pending',
                payment_status VARCHAR(20) NOT NULL DEFAULT 'unpaid',
                delivered_content JSONB NOT NULL DEFAULT '{}',
                version INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                paid_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS audit_log (
                id TEXT PRIMARY KEY,
                correlation_id TEXT NOT NULL,
                event_type VARCHAR(50) NOT NULL,
                entity_type VARCHAR(30) NOT NULL,
                entity_id TEXT NOT NULL,
                previous_state JSONB,
                new_state JSONB,
                metadata JSONB NOT NULL DEFAULT '{}',
                actor TEXT NOT NULL DEFAULT 'system',
                timestamp TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            "CREATE INDEX IF NOT EXISTS idx_orders_transaction ON orders(transaction_id)",
            "CREATE INDEX IF NOT EXISTS idx_orders_account ON orders(account_id, created_at DESC)",
            "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
            "CREATE INDEX IF NOT EXISTS idx_audit_correlation ON audit_log(correlation_id, timestamp)",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                await conn.execute(migration)

        logger.info("database_migrations_complete")


@asynccontextmanager
async def translate_errors(operation: str):
    """Map driver errors onto the pipeline taxonomy."""
    try:
        yield
    except asyncpg.UniqueViolationError as e:
        field = "phone" if "phone" in (getattr(e, "constraint_name", None) or "") else "email"
        raise ConflictError(f"Duplicate {field}", field=field) from e
    except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        logger.error("database_operation_failed", operation=operation, error=str(e),
                     error_type=type(e).__name__)
        raise PersistenceError(f"Database failure during {operation}") from e


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


# =============================================================================
# ROW MAPPING
# =============================================================================

def _account_from_row(row: asyncpg.Record) -> Account:
    return Account(
        account_id=row["id"],
        name=row["name"],
        email=row["email"],
        phone=row["phone"],
        password_hash=row["password_hash"],
        role=row["role"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _product_from_row(row: asyncpg.Record) -> Product:
    return Product(
        product_id=row["id"],
        title=row["title"],
        slug=row["slug"],
        regular_price=float(row["regular_price"]),
        sale_price=float(row["sale_price"]),
        variants=[Variant(**v) for v in _json(row["variants"]) or []],
        is_available=row["is_available"],
        file_type=row["file_type"],
        access_link=row["access_link"],
        access_note=row["access_note"],
    )


def _order_from_row(row: asyncpg.Record) -> Order:
    return Order(
        order_id=row["id"],
        account_id=row["account_id"],
        product_id=row["product_id"],
        transaction_id=row["transaction_id"],
        payment_method=row["payment_method"],
        quantity=row["quantity"],
        variant_name=row["variant_name"],
        amount=float(row["amount"]),
        status=row["status"],
        payment_status=row["payment_status"],
        delivered_content=DeliveredContent(**(_json(row["delivered_content"]) or {})),
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        paid_at=row["paid_at"],
        completed_at=row["completed_at"],
    )


# =============================================================================
# REPOSITORIES
# =============================================================================

class PostgresAccountRepository(IAccountRepository):

    async def get(self, account_id: str) -> Optional[Account]:
        async with translate_errors("account_get"):
            row = await Database.fetch_one("SELECT * FROM accounts WHERE id = $1", account_id)
        return _account_from_row(row) if row else None

    async def find_by_email_or_phone(
        self, email: Optional[str], phone: Optional[str]
    ) -> Optional[Account]:
        async with translate_errors("account_lookup"):
            row = await Database.fetch_one(
                """
                SELECT * FROM accounts
                WHERE email = $1 OR ($2::text IS NOT NULL AND phone = $2)
                ORDER BY (email = $1) DESC NULLS LAST
                LIMIT 1
                """,
                email,
                phone,
            )
        return _account_from_row(row) if row else None

    async def create(self, account: Account) -> Account:
        async with translate_errors("account_create"):
            await Database.execute(
                """
                INSERT INTO accounts
                (id, name, email, phone, password_hash, role, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                account.account_id,
                account.name,
                account.email,
                account.phone,
                account.password_hash,
                account.role.value,
                account.created_at,
                account.updated_at,
            )
        return account

    async def update_phone(self, account_id: str, phone: str) -> Account:
        async with translate_errors("account_update_phone"):
            row = await Database.fetch_one(
                """
                UPDATE accounts SET phone = $1, updated_at = NOW()
                WHERE id = $2
                RETURNING *
                """,
                phone,
                account_id,
            )
        if row is None:
            raise PersistenceError("Account vanished during phone update")
        return _account_from_row(row)


class PostgresProductRepository(IProductRepository):

    async def get(self, product_id: str) -> Optional[Product]:
        async with translate_errors("product_get"):
            row = await Database.fetch_one("SELECT * FROM products WHERE id = $1", product_id)
        return _product_from_row(row) if row else None

    async def save(self, product: Product) -> Product:
        async with translate_errors("product_save"):
            await Database.execute(
                """
                INSERT INTO products
                (id, title, slug, regular_price, sale_price, variants, is_available,
                 file_type, access_link, access_note)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (id) DO UPDATE SET
                    title = EXCLUDED.title,
                    slug = EXCLUDED.slug,
                    regular_price = EXCLUDED.regular_price,
                    sale_price = EXCLUDED.sale_price,
                    variants = EXCLUDED.variants,
                    is_available = EXCLUDED.is_available,
                    file_type = EXCLUDED.file_type,
                    access_link = EXCLUDED.access_link,
                    access_note = EXCLUDED.access_note,
                    updated_at = NOW()
                """,
                product.product_id,
                product.title,
                product.slug,
                product.regular_price,
                product.sale_price,
                json.dumps([v.model_dump() for v in product.variants]),
                product.is_available,
                product.file_type,
                product.access_link,
                product.access_note,
            )
        return product


class PostgresOrderRepository(IOrderRepository):

    async def get(self, order_id: str) -> Optional[Order]:
        async with translate_errors("order_get"):
            row = await Database.fetch_one("SELECT * FROM orders WHERE id = $1", order_id)
        return _order_from_row(row) if row else None

    async def create(self, order: Order) -> Order:
        async with translate_errors("order_create"):
            await Database.execute(
                """
                INSERT INTO orders
                (id, account_id, product_id, transaction_id, payment_method, quantity,
                 variant_name, amount, status, payment_status, delivered_content, version,
                 created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                """,
                order.order_id,
                order.account_id,
                order.product_id,
                order.transaction_id,
                order.payment_method,
                order.quantity,
                order.variant_name,
                order.amount,
                order.status.value,
                order.payment_status.value,
                json.dumps(order.delivered_content.model_dump()),
                order.version,
                order.created_at,
                order.updated_at,
            )
        return order

    async def save_if_version(self, order: Order, expected_version: int) -> bool:
        async with translate_errors("order_update"):
            result = await Database.execute(
                """
                UPDATE orders
                SET status = $1,
                    payment_status = $2,
                    delivered_content = $3,
                    paid_at = $4,
                    completed_at = $5,
                    updated_at = $6,
                    version = $7
                WHERE id = $8 AND version = $9
                """,
                order.status.value,
                order.payment_status.value,
                json.dumps(order.delivered_content.model_dump()),
                order.paid_at,
                order.completed_at,
                order.updated_at,
                order.version,
                order.order_id,
                expected_version,
            )
        return result == "UPDATE 1"

    async def list(self, account_id: Optional[str] = None) -> List[Order]:
        async with translate_errors("order_list"):
            if account_id is None:
                rows = await Database.fetch_all("SELECT * FROM orders ORDER BY created_at DESC")
            else:
                rows = await Database.fetch_all(
                    "SELECT * FROM orders WHERE account_id = $1 ORDER BY created_at DESC",
                    account_id,
                )
        return [_order_from_row(row) for row in rows]

    async def list_by_transaction(self, transaction_id: str) -> List[Order]:
        async with translate_errors("order_list_by_transaction"):
            rows = await Database.fetch_all(
                "SELECT * FROM orders WHERE transaction_id = $1 ORDER BY created_at",
                transaction_id,
            )
        return [_order_from_row(row) for row in rows]

    async def delete(self, order_id: str) -> bool:
        async with translate_errors("order_delete"):
            result = await Database.execute("DELETE FROM orders WHERE id = $1", order_id)
        return result == "DELETE 1"


class PostgresAuditLog(IAuditLog):

    async def append(self, entry: AuditLogEntry) -> None:
        async with translate_errors("audit_append"):
            await Database.execute(
                """
                INSERT INTO audit_log
                (id, correlation_id, event_type, entity_type, entity_id,
                 previous_state, new_state, metadata, actor, timestamp)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                entry.log_id,
                entry.correlation_id,
                entry.event_type.value,
                entry.entity_type,
                entry.entity_id,
                json.dumps(entry.previous_state) if entry.previous_state is not None else None,
                json.dumps(entry.new_state) if entry.new_state is not None else None,
                json.dumps(entry.metadata),
                entry.actor,
                entry.timestamp,
            )

    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        async with translate_errors("audit_read"):
            rows = await Database.fetch_all(
                "SELECT * FROM audit_log WHERE correlation_id = $1 ORDER BY timestamp",
                correlation_id,
            )
        return [
            AuditLogEntry(
                log_id=row["id"],
                correlation_id=row["correlation_id"],
                event_type=row["event_type"],
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                previous_state=_json(row["previous_state"]),
                new_state=_json(row["new_state"]),
                metadata=_json(row["metadata"]) or {},
                actor=row["actor"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]


# =============================================================================
# INITIALIZATION
# =============================================================================

async def init_database():
    """Initialize database on app startup"""
    await Database.initialize()


async def close_database():
    """Close database on app shutdown"""
    await Database.close()
