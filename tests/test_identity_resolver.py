import asyncio

import pytest

from pipeline.errors import AuthenticationError, ConflictError, PersistenceError, ValidationError
from pipeline.identity_resolver import IdentityResolver
from pipeline.models import Account, Role
from pipeline.repositories import InMemoryAccountRepository


class LateWinnerRepository(InMemoryAccountRepository):
    """Misses the first lookup, as if a concurrent checkout created the account in between."""

    def __init__(self, winner: Account):
        super().__init__()
        self.winner = winner
        self.lookups = 0

    async def find_by_email_or_phone(self, email, phone):
        self.lookups += 1
        if self.lookups == 1:
            await super().create(self.winner)
            return None
        return await super().find_by_email_or_phone(email, phone)


class AlwaysConflictRepository(InMemoryAccountRepository):

    async def find_by_email_or_phone(self, email, phone):
        return None

    async def create(self, account):
        raise ConflictError("Email already registered", field="email")


class BrokenRepository(InMemoryAccountRepository):

    async def create(self, account):
        raise RuntimeError("connection reset")


@pytest.fixture
def resolver(accounts, hasher):
    return IdentityResolver(accounts, hasher)


async def test_creates_customer_account_with_email_password(resolver, accounts, hasher):
    account_id = await resolver.resolve("Rahim", "Rahim@Example.com ", "01711111111")

    account = await accounts.get(account_id)
    assert account.email == "rahim@example.com"
    assert account.phone == "01711111111"
    assert account.role == Role.CUSTOMER
    assert await hasher.verify("rahim@example.com", account.password_hash)


async def test_existing_email_returns_same_account(resolver):
    first = await resolver.resolve("Rahim", "rahim@example.com", None)
    second = await resolver.resolve("Someone Else", "RAHIM@example.com", None)
    assert first == second


async def test_existing_phone_returns_same_account(resolver):
    first = await resolver.resolve("Rahim", "rahim@example.com", "01711111111")
    second = await resolver.resolve("Rahim", "other@example.com", "01711111111")
    assert first == second


async def test_missing_phone_is_attached_to_existing_account(resolver, accounts):
    account_id = await resolver.resolve("Rahim", "rahim@example.com", "")
    await resolver.resolve("Rahim", "rahim@example.com", "01711111111")

    account = await accounts.get(account_id)
    assert account.phone == "01711111111"


async def test_phone_owned_by_other_account_is_not_attached(resolver, accounts):
    owner = await resolver.resolve("Karim", "karim@example.com", "01722222222")
    rahim = await resolver.resolve("Rahim", "rahim@example.com", None)

    # Email match wins; the phone stays with its owner
    resolved = await resolver.resolve("Rahim", "rahim@example.com", "01722222222")

    assert resolved == rahim
    assert (await accounts.get(rahim)).phone is None
    assert (await accounts.get(owner)).phone == "01722222222"


async def test_missing_email_is_rejected(resolver):
    with pytest.raises(ValidationError):
        await resolver.resolve("Rahim", "   ", "01711111111")


async def test_concurrent_checkouts_share_one_account(resolver, accounts):
    ids = await asyncio.gather(*(
        resolver.resolve("Rahim", "rahim@example.com", "01711111111") for _ in range(8)
    ))

    assert len(set(ids)) == 1
    assert len(accounts._accounts) == 1


async def test_conflict_recovers_the_winning_account(hasher):
    winner = Account(name="Rahim", email="rahim@example.com", phone="01711111111")
    repo = LateWinnerRepository(winner)
    resolver = IdentityResolver(repo, hasher)

    account_id = await resolver.resolve("Rahim", "rahim@example.com", "01711111111")

    assert account_id == winner.account_id
    assert repo.lookups == 2


async def test_unresolvable_conflict_is_a_persistence_error(hasher):
    resolver = IdentityResolver(AlwaysConflictRepository(), hasher)
    with pytest.raises(PersistenceError):
        await resolver.resolve("Rahim", "rahim@example.com", None)


async def test_store_failure_is_a_persistence_error(hasher):
    resolver = IdentityResolver(BrokenRepository(), hasher)
    with pytest.raises(PersistenceError):
        await resolver.resolve("Rahim", "rahim@example.com", None)


async def test_authenticate_by_email_or_phone(resolver):
    account_id = await resolver.resolve("Rahim", "rahim@example.com", "01711111111")

    by_email = await resolver.authenticate("Rahim@example.com", "rahim@example.com")
    by_phone = await resolver.authenticate("01711111111", "rahim@example.com")

    assert by_email.account_id == account_id
    assert by_phone.account_id == account_id


async def test_authenticate_rejects_wrong_password(resolver):
    await resolver.resolve("Rahim", "rahim@example.com", None)
    with pytest.raises(AuthenticationError):
        await resolver.authenticate("rahim@example.com", "hunter2")


async def test_authenticate_rejects_unknown_identifier(resolver):
    with pytest.raises(AuthenticationError):
        await resolver.authenticate("nobody@example.com", "nobody@example.com")


async def test_concurrent_checkouts_with_different_phones(resolver, accounts):
    first, second = await asyncio.gather(
        resolver.resolve("Rahim", "rahim@example.com", "01711111111"),
        resolver.resolve("Rahim", "rahim@example.com", "01799999999"),
    )

    assert first == second
    assert len(accounts._accounts) == 1
