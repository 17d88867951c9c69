from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from groupledger.db.models import (
    Counterparty,
    GroupBalances,
    GroupLedger,
    IndividualBalance,
    MemberBalance,
    ResidualPolicy,
    SettlementStatus,
    Split,
)
from groupledger.logging import get_logger
from groupledger.services.cache import DEFAULT_TTL_SECONDS, BalanceCache, CacheUnavailableError
from groupledger.services.money import currency_exponent, from_cents, multiply_cents
from groupledger.services.settlement import simplify_debts
from groupledger.services.split import allocate_item, split_equal

log = get_logger(__name__)

# outages a shared cache backend may surface instead of CacheUnavailableError
CACHE_ERRORS = (CacheUnavailableError, ConnectionError, TimeoutError)


class LedgerSource(Protocol):
    async def load_ledger(self, group_id: str) -> Optional[GroupLedger]: ...


@dataclass(slots=True)
class _Totals:
    paid: int = 0
    owed: int = 0


@dataclass(slots=True, frozen=True)
class AggregatedBalances:
    member_balances: list[MemberBalance]
    rounding_adjustment_cents: int


def _compensate(
    nets: dict[str, int],
    residual: int,
    policy: ResidualPolicy,
) -> dict[str, int]:
    member_ids = list(nets)
    if policy == ResidualPolicy.SPREAD:
        corrections = split_equal(-residual, len(member_ids))
    else:
        corrections = [-residual] + [0] * (len(member_ids) - 1)
    return {member_id: nets[member_id] + delta for member_id, delta in zip(member_ids, corrections)}


def calculate_member_balances(
    ledger: GroupLedger,
    residual_policy: ResidualPolicy = ResidualPolicy.FIRST_MEMBER,
) -> AggregatedBalances:
    """Aggregate paid/owed totals per active member of ``ledger``.

    Amounts that cannot be attributed to an active member (payers or split
    members who left the group, items without splits) leave the group sum
    off zero. That residual is moved onto members according to
    ``residual_policy`` and reported as ``rounding_adjustment_cents``.
    """
    if not ledger.members:
        return AggregatedBalances(member_balances=[], rounding_adjustment_cents=0)

    totals = {member.id: _Totals() for member in ledger.members}

    live_expenses = {expense.id for expense in ledger.expenses if expense.deleted_at is None}

    for payer in ledger.payers:
        if payer.expense_id not in live_expenses:
            continue
        if payer.member_id in totals:
            totals[payer.member_id].paid += payer.amount_cents

    splits_by_item: dict[str, list[Split]] = {}
    for split in ledger.splits:
        splits_by_item.setdefault(split.item_id, []).append(split)

    for item in ledger.items:
        if item.expense_id not in live_expenses:
            continue
        item_total = multiply_cents(item.unit_value_cents, item.quantity)
        allocation = allocate_item(item_total, splits_by_item.get(item.id, []))
        if allocation.unattributed:
            log.debug(
                "balances.item.unattributed",
                group_id=ledger.group_id,
                item_id=item.id,
                amount_cents=allocation.unattributed,
            )
        for member_id, share in allocation.shares.items():
            if member_id in totals:
                totals[member_id].owed += share

    for settlement in ledger.settlements:
        if settlement.status != SettlementStatus.CONFIRMED:
            continue
        if settlement.payer_member_id in totals:
            totals[settlement.payer_member_id].paid += settlement.amount_cents
        if settlement.payee_member_id in totals:
            totals[settlement.payee_member_id].owed += settlement.amount_cents

    nets = {member_id: total.paid - total.owed for member_id, total in totals.items()}
    residual = sum(nets.values())
    if residual:
        log.warning(
            "balances.residual_adjusted",
            group_id=ledger.group_id,
            residual_cents=residual,
            policy=residual_policy.value,
        )
        nets = _compensate(nets, residual, residual_policy)

    exponent = currency_exponent(ledger.currency)
    member_balances = [
        MemberBalance(
            member_id=member.id,
            user_id=member.user_id,
            display_name=member.display_name,
            total_paid_cents=totals[member.id].paid,
            total_owed_cents=totals[member.id].owed,
            net_balance_cents=nets[member.id],
            total_paid=from_cents(totals[member.id].paid, exponent),
            total_owed=from_cents(totals[member.id].owed, exponent),
            net_balance=from_cents(nets[member.id], exponent),
        )
        for member in ledger.members
    ]
    return AggregatedBalances(member_balances=member_balances, rounding_adjustment_cents=-residual)


def build_group_balances(
    ledger: GroupLedger,
    residual_policy: ResidualPolicy = ResidualPolicy.FIRST_MEMBER,
) -> GroupBalances:
    aggregated = calculate_member_balances(ledger, residual_policy)
    debts = simplify_debts(aggregated.member_balances, currency_exponent(ledger.currency))
    return GroupBalances(
        group_id=ledger.group_id,
        currency=ledger.currency,
        member_balances=tuple(aggregated.member_balances),
        simplified_debts=tuple(debts),
        calculated_at=datetime.now(timezone.utc),
        rounding_adjustment_cents=aggregated.rounding_adjustment_cents,
    )


class BalanceService:
    def __init__(
        self,
        ledger_source: LedgerSource,
        cache: BalanceCache,
        ttl: float = DEFAULT_TTL_SECONDS,
        residual_policy: ResidualPolicy = ResidualPolicy.FIRST_MEMBER,
    ) -> None:
        self._ledger_source = ledger_source
        self._cache = cache
        self._ttl = ttl
        self._residual_policy = residual_policy
        self._generations: dict[str, int] = {}
        self._generations_lock = threading.Lock()

    async def calculate_group_balances(self, group_id: str) -> Optional[GroupBalances]:
        ledger = await self._ledger_source.load_ledger(group_id)
        if ledger is None:
            return None
        balances = build_group_balances(ledger, self._residual_policy)
        log.info(
            "balances.calculated",
            group_id=group_id,
            members=len(balances.member_balances),
            debts=len(balances.simplified_debts),
        )
        return balances

    async def get_group_balances(self, group_id: str, *, skip_cache: bool = False) -> Optional[GroupBalances]:
        if not skip_cache:
            cached = self._cache_get(group_id)
            if cached is not None:
                log.debug("balances.cache.hit", group_id=group_id)
                return cached
            log.debug("balances.cache.miss", group_id=group_id)

        generation = self._generation(group_id)
        balances = await self.calculate_group_balances(group_id)
        if balances is not None:
            if self._generation(group_id) == generation:
                self._cache_set(group_id, balances)
            else:
                log.info("balances.cache.set_skipped", group_id=group_id)
        return balances

    async def get_individual_balance(self, group_id: str, user_id: str) -> Optional[IndividualBalance]:
        balances = await self.get_group_balances(group_id)
        if balances is None:
            return None

        member = next((b for b in balances.member_balances if b.user_id == user_id), None)
        if member is None:
            return None

        owes_to = tuple(
            Counterparty(
                member_id=debt.to_member.member_id,
                user_id=debt.to_member.user_id,
                display_name=debt.to_member.display_name,
                amount_cents=debt.amount_cents,
                amount=debt.amount,
            )
            for debt in balances.simplified_debts
            if debt.from_member.member_id == member.member_id
        )
        owed_by = tuple(
            Counterparty(
                member_id=debt.from_member.member_id,
                user_id=debt.from_member.user_id,
                display_name=debt.from_member.display_name,
                amount_cents=debt.amount_cents,
                amount=debt.amount,
            )
            for debt in balances.simplified_debts
            if debt.to_member.member_id == member.member_id
        )

        return IndividualBalance(
            member_id=member.member_id,
            user_id=member.user_id,
            display_name=member.display_name,
            total_paid_cents=member.total_paid_cents,
            total_owed_cents=member.total_owed_cents,
            net_balance_cents=member.net_balance_cents,
            total_paid=member.total_paid,
            total_owed=member.total_owed,
            net_balance=member.net_balance,
            owes_to=owes_to,
            owed_by=owed_by,
        )

    def invalidate_group_balances_cache(self, group_id: str) -> None:
        """Drop cached balances for ``group_id``.

        Must be called by every write to a group's expenses, items, splits,
        payers, settlements or membership before that write is acknowledged.
        Failures propagate to the caller.
        """
        with self._generations_lock:
            self._generations[group_id] = self._generations.get(group_id, 0) + 1
        self._cache.invalidate(group_id)
        log.info("balances.cache.invalidated", group_id=group_id)

    def _generation(self, group_id: str) -> int:
        with self._generations_lock:
            return self._generations.get(group_id, 0)

    def _cache_get(self, group_id: str) -> Optional[GroupBalances]:
        try:
            return self._cache.get(group_id)
        except CACHE_ERRORS as exc:
            log.warning("balances.cache.error", op="get", group_id=group_id, error=str(exc))
            return None

    def _cache_set(self, group_id: str, balances: GroupBalances) -> None:
        try:
            self._cache.set(group_id, balances, self._ttl)
        except CACHE_ERRORS as exc:
            log.warning("balances.cache.error", op="set", group_id=group_id, error=str(exc))
