from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from fractions import Fraction
from typing import Sequence, Union

from groupledger.db.models import ShareMode, Split

Weight = Union[int, Decimal, Fraction]


class SplitValidationError(ValueError):
    pass


def split_equal(total: int, n: int) -> list[int]:
    if n < 1:
        raise SplitValidationError("cannot split an amount among fewer than one participant")

    base, remainder = divmod(total, n)
    return [base + 1 if idx < remainder else base for idx in range(n)]


def split_by_weights(total: int, weights: Sequence[Weight]) -> list[int]:
    """Split ``total`` proportionally to ``weights`` with the largest-remainder method.

    Every share starts at ``floor(total * w / sum(w))``. The units left over go
    one each to the largest fractional remainders, ties resolved by position,
    so the result always sums to ``total``.
    """
    if not weights:
        raise SplitValidationError("weights must not be empty")

    exact_weights = []
    for idx, weight in enumerate(weights):
        if isinstance(weight, float):
            weight = Decimal(repr(weight))
        value = Fraction(weight)
        if value < 0:
            raise SplitValidationError(f"weight at position {idx} is negative: {weight}")
        exact_weights.append(value)

    weight_sum = sum(exact_weights, Fraction(0))
    if weight_sum == 0:
        if total == 0:
            return [0] * len(exact_weights)
        raise SplitValidationError("weights must not all be zero")

    shares: list[int] = []
    remainders: list[Fraction] = []
    for value in exact_weights:
        quota = total * value / weight_sum
        floor = quota.numerator // quota.denominator
        shares.append(floor)
        remainders.append(quota - floor)

    leftover = total - sum(shares)
    order = sorted(range(len(shares)), key=lambda idx: (-remainders[idx], idx))
    for idx in order[:leftover]:
        shares[idx] += 1

    return shares


@dataclass(slots=True)
class ItemAllocation:
    shares: dict[str, int] = field(default_factory=dict)
    unattributed: int = 0


def _is_exact(split: Split) -> bool:
    return split.share_mode == ShareMode.EXACT and split.exact_amount_cents is not None


def _weight_of(split: Split) -> Weight:
    if split.share_mode == ShareMode.EQUAL or split.weight is None:
        return 1
    return split.weight


def allocate_item(total: int, splits: Sequence[Split]) -> ItemAllocation:
    """Attribute one item's total to its splits.

    Exact amounts are taken first; whatever they leave is divided among the
    remaining splits by weight, equal splits counting as weight 1.
    """
    allocation = ItemAllocation(shares={split.member_id: 0 for split in splits})

    consumed = 0
    for split in splits:
        if _is_exact(split):
            assert split.exact_amount_cents is not None
            allocation.shares[split.member_id] += split.exact_amount_cents
            consumed += split.exact_amount_cents

    remaining = total - consumed
    weighted = [split for split in splits if not _is_exact(split)]
    if not weighted:
        allocation.unattributed = remaining
        return allocation

    shares = split_by_weights(remaining, [_weight_of(split) for split in weighted])
    for split, share in zip(weighted, shares):
        allocation.shares[split.member_id] += share

    return allocation

