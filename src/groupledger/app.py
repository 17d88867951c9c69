from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Optional, Sequence

from groupledger.config import Settings, get_settings
from groupledger.db.models import Counterparty, GroupBalances, IndividualBalance, MemberRef
from groupledger.db.repo import BalanceRepository, Database
from groupledger.logging import configure_logging, get_logger
from groupledger.services.balances import BalanceService
from groupledger.services.cache import BalanceCache, InMemoryBalanceCache, NullBalanceCache


def build_cache(settings: Settings) -> BalanceCache:
    if not settings.balance_cache_enabled:
        return NullBalanceCache()
    return InMemoryBalanceCache(
        default_ttl=settings.balance_cache_ttl_seconds,
        max_size=settings.balance_cache_max_size,
    )


def build_balance_service(settings: Settings, db: Database) -> BalanceService:
    return BalanceService(
        BalanceRepository(db),
        build_cache(settings),
        ttl=settings.balance_cache_ttl_seconds,
        residual_policy=settings.residual_policy,
    )


def _member_to_dict(member: MemberRef) -> dict[str, Any]:
    return {"memberId": member.member_id, "userId": member.user_id, "displayName": member.display_name}


def _counterparty_to_dict(party: Counterparty) -> dict[str, Any]:
    return {
        "memberId": party.member_id,
        "userId": party.user_id,
        "displayName": party.display_name,
        "amount": str(party.amount),
    }


def group_balances_to_dict(balances: GroupBalances) -> dict[str, Any]:
    return {
        "groupId": balances.group_id,
        "currency": balances.currency,
        "memberBalances": [
            {
                "memberId": b.member_id,
                "userId": b.user_id,
                "displayName": b.display_name,
                "totalPaid": str(b.total_paid),
                "totalOwed": str(b.total_owed),
                "netBalance": str(b.net_balance),
            }
            for b in balances.member_balances
        ],
        "simplifiedDebts": [
            {
                "from": _member_to_dict(debt.from_member),
                "to": _member_to_dict(debt.to_member),
                "amount": str(debt.amount),
            }
            for debt in balances.simplified_debts
        ],
        "roundingAdjustmentCents": balances.rounding_adjustment_cents,
        "calculatedAt": balances.calculated_at.isoformat(),
    }


def individual_balance_to_dict(balance: IndividualBalance) -> dict[str, Any]:
    return {
        "memberId": balance.member_id,
        "userId": balance.user_id,
        "displayName": balance.display_name,
        "totalPaid": str(balance.total_paid),
        "totalOwed": str(balance.total_owed),
        "netBalance": str(balance.net_balance),
        "owesTo": [_counterparty_to_dict(party) for party in balance.owes_to],
        "owedBy": [_counterparty_to_dict(party) for party in balance.owed_by],
    }


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="groupledger", description="Print group balances as JSON.")
    parser.add_argument("group_id")
    parser.add_argument("--user", dest="user_id", help="show one user's balance and counterparties")
    parser.add_argument("--skip-cache", action="store_true")
    return parser.parse_args(argv)


async def run(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    log = get_logger(__name__)

    db = Database(settings.database_url)
    await db.connect()
    service = build_balance_service(settings, db)
    try:
        if args.user_id:
            individual = await service.get_individual_balance(args.group_id, args.user_id)
            payload = individual_balance_to_dict(individual) if individual else None
        else:
            balances = await service.get_group_balances(args.group_id, skip_cache=args.skip_cache)
            payload = group_balances_to_dict(balances) if balances else None
    finally:
        await db.close()

    if payload is None:
        log.info("balances.not_found", group_id=args.group_id, user_id=args.user_id)
        return 1
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()
