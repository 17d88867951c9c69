import asyncio
from dataclasses import replace
from typing import Optional

import pytest

from groupledger.db.models import (
    Expense,
    ExpenseItem,
    GroupBalances,
    GroupLedger,
    Member,
    Payer,
    Settlement,
    SettlementStatus,
    ShareMode,
    Split,
)
from groupledger.services.balances import BalanceService
from groupledger.services.cache import CacheUnavailableError, InMemoryBalanceCache


def _ledger() -> GroupLedger:
    members = tuple(
        Member(id=f"m-{name}", group_id="g1", user_id=f"u-{name}", display_name=name.upper()) for name in "abc"
    )
    return GroupLedger(
        group_id="g1",
        currency="USD",
        members=members,
        expenses=(Expense(id="e1", group_id="g1", subtotal_cents=9000),),
        items=(ExpenseItem(id="i1", expense_id="e1", unit_value_cents=9000),),
        payers=(Payer(expense_id="e1", member_id="m-a", amount_cents=9000),),
        splits=tuple(Split(item_id="i1", member_id=m.id, share_mode=ShareMode.EQUAL) for m in members),
    )


class StubLedgerSource:
    def __init__(self, ledgers: dict[str, GroupLedger]) -> None:
        self.ledgers = ledgers
        self.loads = 0

    async def load_ledger(self, group_id: str) -> Optional[GroupLedger]:
        self.loads += 1
        return self.ledgers.get(group_id)


class BrokenCache:
    def get(self, group_id: str) -> Optional[GroupBalances]:
        raise CacheUnavailableError("cache down")

    def set(self, group_id: str, value: GroupBalances, ttl: Optional[float] = None) -> None:
        raise CacheUnavailableError("cache down")

    def invalidate(self, group_id: str) -> None:
        raise CacheUnavailableError("cache down")


class PausingLedgerSource(StubLedgerSource):
    """Takes its snapshot, then waits for ``release`` before returning it."""

    def __init__(self, ledgers: dict[str, GroupLedger]) -> None:
        super().__init__(ledgers)
        self.loaded = asyncio.Event()
        self.release = asyncio.Event()

    async def load_ledger(self, group_id: str) -> Optional[GroupLedger]:
        ledger = await super().load_ledger(group_id)
        self.loaded.set()
        await self.release.wait()
        return ledger


class OfflineCache:
    def __init__(self, error: Exception) -> None:
        self.error = error

    def get(self, group_id: str) -> Optional[GroupBalances]:
        raise self.error

    def set(self, group_id: str, value: GroupBalances, ttl: Optional[float] = None) -> None:
        raise self.error

    def invalidate(self, group_id: str) -> None:
        raise self.error


def _settled_ledger() -> GroupLedger:
    return replace(
        _ledger(),
        settlements=(
            Settlement(
                id="s1",
                group_id="g1",
                payer_member_id="m-b",
                payee_member_id="m-a",
                amount_cents=3000,
                status=SettlementStatus.CONFIRMED,
            ),
        ),
    )


def _service(source: StubLedgerSource, cache=None) -> BalanceService:
    return BalanceService(source, cache if cache is not None else InMemoryBalanceCache(), ttl=60)


@pytest.mark.asyncio
async def test_consecutive_reads_are_served_from_cache():
    source = StubLedgerSource({"g1": _ledger()})
    service = _service(source)

    first = await service.get_group_balances("g1")
    second = await service.get_group_balances("g1")

    assert first is not None
    assert second == first
    assert source.loads == 1


@pytest.mark.asyncio
async def test_skip_cache_recomputes_and_refreshes():
    source = StubLedgerSource({"g1": _ledger()})
    service = _service(source)

    await service.get_group_balances("g1")
    fresh = await service.get_group_balances("g1", skip_cache=True)
    cached = await service.get_group_balances("g1")

    assert source.loads == 2
    assert cached is fresh


@pytest.mark.asyncio
async def test_invalidation_exposes_mutations():
    source = StubLedgerSource({"g1": _ledger()})
    service = _service(source)
    before = await service.get_group_balances("g1")

    source.ledgers["g1"] = _settled_ledger()
    stale = await service.get_group_balances("g1")
    assert stale is before

    service.invalidate_group_balances_cache("g1")
    after = await service.get_group_balances("g1")

    assert after is not None
    nets = {b.member_id: b.net_balance_cents for b in after.member_balances}
    assert nets == {"m-a": 3000, "m-b": 0, "m-c": -3000}
    assert len(after.simplified_debts) == 1


@pytest.mark.asyncio
async def test_missing_group_returns_none_and_is_not_cached():
    source = StubLedgerSource({})
    service = _service(source)

    assert await service.get_group_balances("nope") is None
    assert await service.get_group_balances("nope") is None
    assert source.loads == 2


@pytest.mark.asyncio
async def test_cache_outage_degrades_to_recomputation():
    source = StubLedgerSource({"g1": _ledger()})
    service = _service(source, BrokenCache())

    balances = await service.get_group_balances("g1")

    assert balances is not None
    assert [b.net_balance_cents for b in balances.member_balances] == [6000, -3000, -3000]


def test_failed_invalidation_propagates():
    service = _service(StubLedgerSource({}), BrokenCache())

    with pytest.raises(CacheUnavailableError):
        service.invalidate_group_balances_cache("g1")


@pytest.mark.asyncio
async def test_individual_balance_for_creditor():
    service = _service(StubLedgerSource({"g1": _ledger()}))

    balance = await service.get_individual_balance("g1", "u-a")

    assert balance is not None
    assert balance.member_id == "m-a"
    assert balance.net_balance_cents == 6000
    assert balance.owes_to == ()
    assert [(p.member_id, p.amount_cents) for p in balance.owed_by] == [("m-b", 3000), ("m-c", 3000)]


@pytest.mark.asyncio
async def test_individual_balance_for_debtor():
    service = _service(StubLedgerSource({"g1": _ledger()}))

    balance = await service.get_individual_balance("g1", "u-b")

    assert balance is not None
    assert balance.total_owed_cents == 3000
    assert [(p.user_id, p.display_name, p.amount_cents) for p in balance.owes_to] == [("u-a", "A", 3000)]
    assert balance.owed_by == ()


@pytest.mark.asyncio
async def test_individual_balance_not_found():
    service = _service(StubLedgerSource({"g1": _ledger()}))

    assert await service.get_individual_balance("g1", "u-zzz") is None
    assert await service.get_individual_balance("g2", "u-a") is None


@pytest.mark.asyncio
async def test_invalidation_during_recompute_does_not_cache_old_balances():
    source = PausingLedgerSource({"g1": _ledger()})
    service = _service(source)

    pending = asyncio.create_task(service.get_group_balances("g1"))
    await source.loaded.wait()
    source.ledgers["g1"] = _settled_ledger()
    service.invalidate_group_balances_cache("g1")
    source.release.set()

    in_flight = await pending
    assert in_flight is not None
    assert [b.net_balance_cents for b in in_flight.member_balances] == [6000, -3000, -3000]

    fresh = await service.get_group_balances("g1")

    assert fresh is not None
    nets = {b.member_id: b.net_balance_cents for b in fresh.member_balances}
    assert nets == {"m-a": 3000, "m-b": 0, "m-c": -3000}
    assert source.loads == 2


@pytest.mark.asyncio
async def test_reads_after_invalidation_are_cached_again():
    source = StubLedgerSource({"g1": _ledger()})
    service = _service(source)

    service.invalidate_group_balances_cache("g1")
    await service.get_group_balances("g1")
    await service.get_group_balances("g1")

    assert source.loads == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [ConnectionError("refused"), TimeoutError("timed out")])
async def test_connection_errors_from_cache_degrade_to_recomputation(error):
    source = StubLedgerSource({"g1": _ledger()})
    service = _service(source, OfflineCache(error))

    balances = await service.get_group_balances("g1")

    assert balances is not None
    assert [b.net_balance_cents for b in balances.member_balances] == [6000, -3000, -3000]
