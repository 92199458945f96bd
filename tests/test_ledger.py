"""Credit ledger tests.

Tests focus on balance accounting:
- hold / release_hold / settle_hold / credit arithmetic
- Insufficient balance and invariant violations abort without side effects
- Concurrent holds never spend the same balance twice
- Every mutation leaves an audit entry
"""

import asyncio
from uuid import uuid4

import pytest

from genledger.models.ledger import LedgerOperation
from genledger.repositories.ledger import LedgerBalance
from genledger.services.exceptions import InsufficientCreditError, LedgerInvariantError


async def _balance(uow_factory, owner_id: str) -> LedgerBalance:
    async with await uow_factory() as uow:
        return await uow.ledger.get_balance(owner_id)


@pytest.mark.asyncio
async def test_unknown_owner_has_zero_balance(uow_factory):
    """Owners who never topped up read as an empty account."""
    assert await _balance(uow_factory, "nobody") == LedgerBalance(available=0, held=0)


@pytest.mark.asyncio
async def test_credit_creates_account_lazily(uow_factory):
    async with await uow_factory() as uow:
        await uow.ledger.credit("alice", 500)
    async with await uow_factory() as uow:
        await uow.ledger.credit("alice", 250)

    assert await _balance(uow_factory, "alice") == LedgerBalance(available=750, held=0)


@pytest.mark.asyncio
async def test_hold_moves_credits_from_available_to_held(uow_factory, fund):
    await fund("alice", 100)

    async with await uow_factory() as uow:
        await uow.ledger.hold("alice", 40)

    assert await _balance(uow_factory, "alice") == LedgerBalance(available=60, held=40)


@pytest.mark.asyncio
async def test_release_hold_is_full_refund(uow_factory, fund):
    """Releasing a hold restores the balance held before it was placed."""
    await fund("alice", 100)

    async with await uow_factory() as uow:
        await uow.ledger.hold("alice", 40)
    async with await uow_factory() as uow:
        await uow.ledger.release_hold("alice", 40)

    assert await _balance(uow_factory, "alice") == LedgerBalance(available=100, held=0)


@pytest.mark.asyncio
async def test_settle_hold_only_clears_held_amount(uow_factory, fund):
    """The balance was reduced at hold time; settlement does not debit again."""
    await fund("alice", 100)

    async with await uow_factory() as uow:
        await uow.ledger.hold("alice", 40)
    async with await uow_factory() as uow:
        await uow.ledger.settle_hold("alice", 40)

    assert await _balance(uow_factory, "alice") == LedgerBalance(available=60, held=0)


@pytest.mark.asyncio
async def test_hold_above_balance_raises_insufficient_credit(uow_factory, fund):
    await fund("alice", 30)

    with pytest.raises(InsufficientCreditError) as exc_info:
        async with await uow_factory() as uow:
            await uow.ledger.hold("alice", 31)

    assert exc_info.value.owner_id == "alice"
    assert exc_info.value.requested == 31
    assert await _balance(uow_factory, "alice") == LedgerBalance(available=30, held=0)


@pytest.mark.asyncio
async def test_hold_without_account_raises_insufficient_credit(uow_factory):
    with pytest.raises(InsufficientCreditError):
        async with await uow_factory() as uow:
            await uow.ledger.hold("nobody", 1)


@pytest.mark.asyncio
async def test_release_more_than_held_raises_invariant_error(uow_factory, fund):
    """Ledger invariant violations abort the operation rather than clamping."""
    await fund("alice", 100)
    async with await uow_factory() as uow:
        await uow.ledger.hold("alice", 10)

    with pytest.raises(LedgerInvariantError):
        async with await uow_factory() as uow:
            await uow.ledger.release_hold("alice", 11)

    with pytest.raises(LedgerInvariantError):
        async with await uow_factory() as uow:
            await uow.ledger.settle_hold("alice", 11)

    assert await _balance(uow_factory, "alice") == LedgerBalance(available=90, held=10)


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5])
async def test_non_positive_amounts_are_rejected(uow_factory, amount):
    with pytest.raises(ValueError):
        async with await uow_factory() as uow:
            await uow.ledger.credit("alice", amount)


@pytest.mark.asyncio
async def test_every_mutation_writes_an_entry(uow_factory, fund):
    job_id = uuid4()
    await fund("alice", 100)

    async with await uow_factory() as uow:
        await uow.ledger.hold("alice", 18, job_id=job_id)
    async with await uow_factory() as uow:
        await uow.ledger.settle_hold("alice", 18, job_id=job_id)

    async with await uow_factory() as uow:
        entries = await uow.ledger.list_entries(owner_id="alice")
        job_entries = await uow.ledger.list_entries(job_id=job_id)

    assert [e.operation for e in entries] == [
        LedgerOperation.CREDIT,
        LedgerOperation.HOLD,
        LedgerOperation.SETTLE,
    ]
    assert [(e.operation, e.amount) for e in job_entries] == [
        (LedgerOperation.HOLD, 18),
        (LedgerOperation.SETTLE, 18),
    ]


@pytest.mark.asyncio
async def test_concurrent_holds_never_overspend(uow_factory, fund):
    """Five concurrent holds of 30 against a balance of 100 admit exactly three."""
    await fund("alice", 100)

    async def _hold():
        async with await uow_factory() as uow:
            await uow.ledger.hold("alice", 30)

    results = await asyncio.gather(*(_hold() for _ in range(5)), return_exceptions=True)

    admitted = [r for r in results if r is None]
    rejected = [r for r in results if isinstance(r, InsufficientCreditError)]
    assert len(admitted) == 3
    assert len(rejected) == 2
    assert await _balance(uow_factory, "alice") == LedgerBalance(available=10, held=90)


@pytest.mark.asyncio
async def test_accounts_are_independent(uow_factory, fund):
    await fund("alice", 50)
    await fund("bob", 50)

    async with await uow_factory() as uow:
        await uow.ledger.hold("alice", 50)

    assert await _balance(uow_factory, "alice") == LedgerBalance(available=0, held=50)
    assert await _balance(uow_factory, "bob") == LedgerBalance(available=50, held=0)
