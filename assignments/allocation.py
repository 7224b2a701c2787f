"""
Bulk lead allocation planner.

Turns a manager's percentage split across agents into per-agent lead counts
(largest-remainder rounding) and then into a concrete lead -> agent plan.
Pure functions only: no database, cache or network access happens here.
"""

import math
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Sequence


@dataclass(frozen=True)
class Allocation:
    recipient_id: str
    percent: float


@dataclass(frozen=True)
class ComputedAllocation:
    recipient_id: str
    percent: float
    count: int


@dataclass(frozen=True)
class PlanEntry:
    resource_id: str
    recipient_id: str


def clamp_percent(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(100.0, value))


def _to_percent(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def allocations_from_payload(rows: Iterable[Dict[str, Any]]) -> List[Allocation]:
    """
    Convert raw JSON rows ({"agent_id": ..., "percent": ...}) into Allocations.

    Unparseable percents become NaN, which normalize() turns into 0.
    """
    allocations = []
    for row in rows or []:
        if not isinstance(row, dict):
            continue
        agent_id = row.get('agent_id')
        allocations.append(Allocation(
            recipient_id='' if agent_id is None else str(agent_id),
            percent=_to_percent(row.get('percent')),
        ))
    return allocations


def normalize(allocations: Sequence[Allocation]) -> List[Allocation]:
    """Clamp percents to [0, 100] and drop entries without a recipient. Order is kept."""
    return [
        Allocation(recipient_id=a.recipient_id, percent=clamp_percent(a.percent))
        for a in allocations
        if a.recipient_id and a.recipient_id.strip()
    ]


def is_valid_total(allocations: Sequence[Allocation]) -> bool:
    total = sum(a.percent for a in normalize(allocations))
    return 0 < total <= 100


def has_duplicate_recipients(allocations: Sequence[Allocation]) -> bool:
    ids = [a.recipient_id for a in normalize(allocations)]
    return len(set(ids)) != len(ids)


def even_allocations(recipient_ids: Sequence[str]) -> List[Allocation]:
    """Split 100% across recipients; the first few absorb the integer remainder."""
    n = len(recipient_ids)
    if n == 0:
        return []

    base = 100 // n
    extra = 100 - base * n
    allocations = []
    for idx, recipient_id in enumerate(recipient_ids):
        allocations.append(Allocation(recipient_id=recipient_id, percent=float(base + (1 if idx < extra else 0))))
    return allocations


def compute_counts(total_resources: int, allocations: Sequence[Allocation]) -> List[ComputedAllocation]:
    """
    Compute how many of `total_resources` leads each allocation receives.

    Only min(100, sum of percents)% of the pool (floored) is handed out; the
    rest stays unassigned. Percents are re-normalized to shares of the raw
    total, each share is floored, and the leftover units go to the largest
    fractional remainders (input order breaks ties).
    """
    cleaned = normalize(allocations)

    def zero_counts():
        return [ComputedAllocation(a.recipient_id, a.percent, 0) for a in cleaned]

    if total_resources <= 0 or not cleaned:
        return zero_counts()

    percent_total = sum(a.percent for a in cleaned)
    if percent_total <= 0:
        return zero_counts()

    capped_total = min(100.0, percent_total)
    assignable = math.floor(total_resources * capped_total / 100)
    if assignable <= 0:
        return zero_counts()

    shares = [replace(a, percent=a.percent / percent_total * 100) for a in cleaned]
    raw_counts = [assignable * a.percent / 100 for a in shares]

    counts = [math.floor(raw) for raw in raw_counts]
    remaining = max(0, assignable - sum(counts))

    # stable sort (reverse=True included): equal remainders keep input order
    remainder_order = sorted(
        range(len(raw_counts)),
        key=lambda idx: raw_counts[idx] - math.floor(raw_counts[idx]),
        reverse=True,
    )
    i = 0
    while remaining > 0:
        counts[remainder_order[i % len(remainder_order)]] += 1
        remaining -= 1
        i += 1

    assigned = sum(counts)
    if assigned != assignable:
        counts[-1] += assignable - assigned

    return [
        ComputedAllocation(recipient_id=a.recipient_id, percent=a.percent, count=count)
        for a, count in zip(shares, counts)
    ]


def build_plan(resource_ids: Sequence[str], allocations: Sequence[Allocation]) -> List[PlanEntry]:
    """Walk the resource ids once, giving each allocation its count of consecutive ids."""
    computed = compute_counts(len(resource_ids), allocations)
    plan = []

    cursor = 0
    for allocation in computed:
        for _ in range(allocation.count):
            if cursor >= len(resource_ids):
                break
            plan.append(PlanEntry(resource_id=resource_ids[cursor], recipient_id=allocation.recipient_id))
            cursor += 1

    return plan


def summarize_plan(computed: Sequence[ComputedAllocation]) -> Dict[str, int]:
    """Per-recipient totals; duplicate recipients are summed here, not in the planner."""
    totals: Dict[str, int] = {}
    for allocation in computed:
        totals[allocation.recipient_id] = totals.get(allocation.recipient_id, 0) + allocation.count
    return totals
