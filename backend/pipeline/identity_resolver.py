"""
Identity Resolver
=================
Turns checkout contact info into a durable account without creating
duplicates when checkouts for the same email/phone race each other.

The uniqueness constraints in the store are the only arbiter: a create that
loses the race surfaces as `ConflictError`, and the resolver answers it by
re-reading the account the winner created.
"""

from typing import Optional

import structlog

from .credentials import PasswordHasher, default_password_for
from .errors import AuthenticationError, ConflictError, PersistenceError, ValidationError
from .models import Account, Role, normalize_email, normalize_phone
from .repositories import IAccountRepository, InMemoryAccountRepository


class IdentityResolver:
    """
    Find-or-create for customer accounts.

    Example:
        resolver = IdentityResolver(accounts)
        account_id = await resolver.resolve("Rahim", "rahim@example.com", "01711111111")
    """

    def __init__(
        self,
        accounts: Optional[IAccountRepository] = None,
        hasher: Optional[PasswordHasher] = None,
    ):
        self.accounts = accounts or InMemoryAccountRepository()
        self.hasher = hasher or PasswordHasher()
        self._logger = structlog.get_logger().bind(component="identity_resolver")

    async def resolve(self, name: Optional[str], email: Optional[str], phone: Optional[str] = None) -> str:
        """Return the id of the account owning `email` or `phone`, creating one if needed."""
        email = normalize_email(email)
        phone = normalize_phone(phone)
        if not email:
            raise ValidationError("Email is required", details={"field": "email"})
        display_name = (name or "").strip() or email.split("@")[0]

        existing = await self.accounts.find_by_email_or_phone(email, phone)
        if existing:
            await self._attach_phone(existing, phone)
            return existing.account_id

        password_hash = await self.hasher.hash(default_password_for(email))
        account = Account(
            name=display_name,
            email=email,
            phone=phone,
            password_hash=password_hash,
            role=Role.CUSTOMER,
        )

        try:
            created = await self.accounts.create(account)
        except ConflictError as e:
            # A concurrent checkout created the account first
            winner = await self.accounts.find_by_email_or_phone(email, phone)
            if winner is None:
                self._logger.error("identity_conflict_unresolved", field=e.field)
                raise PersistenceError(
                    "Account conflict could not be resolved",
                    details={"field": e.field},
                ) from e
            self._logger.info(
                "identity_conflict_recovered",
                account_id=winner.account_id,
                field=e.field,
            )
            return winner.account_id
        except PersistenceError:
            raise
        except Exception as e:
            self._logger.error("account_create_failed", error=str(e), error_type=type(e).__name__)
            raise PersistenceError("Failed to create account") from e

        self._logger.info("account_created", account_id=created.account_id)
        return created.account_id

    async def _attach_phone(self, account: Account, phone: Optional[str]) -> None:
        """Best-effort: give a phone-less account the supplied phone."""
        if account.phone or not phone:
            return
        try:
            await self.accounts.update_phone(account.account_id, phone)
            self._logger.info("account_phone_attached", account_id=account.account_id)
        except ConflictError:
            # Phone belongs to another account; identity is still the email match
            self._logger.info("account_phone_update_dropped", account_id=account.account_id)

    async def authenticate(self, identifier: str, password: str) -> Account:
        """Check credentials where `identifier` is either an email or a phone."""
        if not identifier or not password:
            raise AuthenticationError("Missing email/phone or password")

        account = await self.accounts.find_by_email_or_phone(
            normalize_email(identifier),
            normalize_phone(identifier),
        )
        if account is None or not await self.hasher.verify(password, account.password_hash):
            self._logger.info("authentication_failed")
            raise AuthenticationError("Invalid credentials")

        self._logger.info("authenticated", account_id=account.account_id, role=account.role.value)
        return account
