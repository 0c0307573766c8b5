import asyncio

import pytest

from chatcommerce.credits import CreditsLedger
from chatcommerce.errors import CreditAccountNotFound, InsufficientCreditsError


def test_cost_includes_voice_surcharge():
    assert CreditsLedger.cost() == 1
    assert CreditsLedger.cost(voice_enabled=True) == 5


def test_deduct_and_add(ledger):
    ledger.open_account("owner-1", 10)

    assert ledger.deduct("owner-1", 3) == 7
    assert ledger.add("owner-1", 5) == 12
    assert ledger.balance("owner-1") == 12


def test_deduct_refuses_to_go_negative(ledger):
    ledger.open_account("owner-1", 2)

    with pytest.raises(InsufficientCreditsError) as excinfo:
        ledger.deduct("owner-1", 3)

    assert excinfo.value.requested == 3
    assert ledger.balance("owner-1") == 2


def test_unknown_account(ledger):
    assert ledger.balance("ghost") is None
    assert not ledger.has_balance("ghost")
    with pytest.raises(CreditAccountNotFound):
        ledger.deduct("ghost", 1)
    with pytest.raises(CreditAccountNotFound):
        ledger.add("ghost", 1)


def test_has_balance(ledger):
    ledger.open_account("empty", 0)
    ledger.open_account("funded", 1)

    assert not ledger.has_balance("empty")
    assert ledger.has_balance("funded")


@pytest.mark.parametrize("amount", [0, -1, True, 1.5])
def test_invalid_amounts(ledger, amount):
    ledger.open_account("owner-1", 10)
    with pytest.raises(ValueError):
        ledger.deduct("owner-1", amount)


@pytest.mark.asyncio
async def test_concurrent_deductions_never_overdraw(ledger):
    ledger.open_account("owner-1", 10)

    results = await asyncio.gather(
        ledger.adeduct("owner-1", 6),
        ledger.adeduct("owner-1", 6),
        return_exceptions=True,
    )

    successes = [result for result in results if isinstance(result, int)]
    failures = [result for result in results if isinstance(result, InsufficientCreditsError)]
    assert successes == [4]
    assert len(failures) == 1
    assert ledger.balance("owner-1") == 4


def test_open_account_never_overwrites_a_balance(ledger):
    assert ledger.open_account("owner-1", 10) is True
    ledger.deduct("owner-1", 4)

    assert ledger.open_account("owner-1", 50) is False
    assert ledger.balance("owner-1") == 6


def test_top_up_creates_then_credits(ledger):
    assert ledger.top_up("new-owner", 5) == 5
    assert ledger.top_up("new-owner", 3) == 8
    with pytest.raises(ValueError):
        ledger.top_up("new-owner", 0)


@pytest.mark.asyncio
async def test_concurrent_first_top_ups_keep_every_amount(ledger):
    results = await asyncio.gather(
        *(asyncio.to_thread(ledger.top_up, "owner-1", amount) for amount in (5, 7, 11)),
    )

    assert max(results) == 23
    assert ledger.balance("owner-1") == 23
