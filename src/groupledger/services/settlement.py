from __future__ import annotations

from dataclasses import dataclass
from typing import Hashable, Mapping, Sequence

from groupledger.db.models import MemberBalance, SimplifiedDebt
from groupledger.services.money import DEFAULT_EXPONENT, from_cents


@dataclass(slots=True, frozen=True)
class Transfer:
    from_member: Hashable
    to_member: Hashable
    amount_cents: int


def settle(balances: Mapping[Hashable, int]) -> list[Transfer]:
    """Greedily pair the largest creditor with the largest debtor.

    ``balances`` holds net positions in integer minor units and must sum to
    zero; otherwise the unmatched side is left over with no transfer. Sorting
    is stable, so parties with equal balances keep the order of ``balances``.
    """
    creditors: list[tuple[Hashable, int]] = []
    debtors: list[tuple[Hashable, int]] = []

    for member_id, balance in balances.items():
        if balance > 0:
            creditors.append((member_id, balance))
        elif balance < 0:
            debtors.append((member_id, -balance))

    creditors.sort(key=lambda x: x[1], reverse=True)
    debtors.sort(key=lambda x: x[1], reverse=True)

    transfers: list[Transfer] = []
    i, j = 0, 0

    while i < len(creditors) and j < len(debtors):
        cred_id, cred_amount = creditors[i]
        debt_id, debt_amount = debtors[j]

        transfer_amount = min(cred_amount, debt_amount)
        transfers.append(Transfer(from_member=debt_id, to_member=cred_id, amount_cents=transfer_amount))

        cred_amount -= transfer_amount
        debt_amount -= transfer_amount

        if cred_amount == 0:
            i += 1
        else:
            creditors[i] = (cred_id, cred_amount)

        if debt_amount == 0:
            j += 1
        else:
            debtors[j] = (debt_id, debt_amount)

    return transfers


def simplify_debts(
    member_balances: Sequence[MemberBalance],
    exponent: int = DEFAULT_EXPONENT,
) -> list[SimplifiedDebt]:
    by_id = {balance.member_id: balance for balance in member_balances}
    transfers = settle({balance.member_id: balance.net_balance_cents for balance in member_balances})

    return [
        SimplifiedDebt(
            from_member=by_id[transfer.from_member].ref,
            to_member=by_id[transfer.to_member].ref,
            amount_cents=transfer.amount_cents,
            amount=from_cents(transfer.amount_cents, exponent),
        )
        for transfer in transfers
    ]
