"""
Bill totals engine.

Splits a bill's subtotal, tax, tip, discount and service fee across people
according to weighted item shares. Pure: no I/O, no module state; identical
inputs always give identical output.

Rounding: every intermediate value is kept at full Decimal precision. Only
reported values are rounded to cents (ROUND_HALF_UP). Per-person totals are
then reconciled in whole cents with the largest-remainder method so they add
up to the allocated amount exactly.
"""
from __future__ import annotations

import logging
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from bill_types import (
    CENT,
    ZERO,
    BillTotals,
    Item,
    ItemLine,
    ItemShare,
    Person,
    PersonTotal,
    Reconciliation,
    SplitMethod,
    UnassignedPolicy,
    to_decimal,
)
from errors import DanglingReferenceError, EmptyParticipantsError, ValidationError

logger = logging.getLogger(__name__)

FRACTION_PLACES = Decimal("0.000001")
# Below this the allocated and billed amounts are the same number up to division noise.
EXACT_TOLERANCE = Decimal("1e-12")


def money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _to_cents(value: Decimal) -> Decimal:
    return value * 100


def reconcile_pennies(exact_totals: Sequence[Decimal], target: Decimal) -> Tuple[List[Decimal], int]:
    """
    Round each exact total to cents so the rounded values sum to `target`.

    Each value is floored to a whole cent, then the missing cents are handed out
    one at a time, largest fractional remainder first (ties: larger amount, then
    input order). A negative shortfall takes cents back from the smallest
    remainders first. Returns the rounded totals and the signed number of cents
    handed out on top of the floors.
    """
    if not exact_totals:
        return [], 0
    target_cents = int(_to_cents(money(target)))
    floors = [int(_to_cents(t).to_integral_value(rounding=ROUND_FLOOR)) for t in exact_totals]
    remainders = [_to_cents(t) - f for t, f in zip(exact_totals, floors)]
    missing = target_cents - sum(floors)

    n = len(exact_totals)
    cents = list(floors)
    if missing > 0:
        order = sorted(range(n), key=lambda i: (-remainders[i], -exact_totals[i], i))
        for step in range(missing):
            cents[order[step % n]] += 1
    elif missing < 0:
        order = sorted(range(n), key=lambda i: (remainders[i], exact_totals[i], i))
        for step in range(-missing):
            cents[order[step % n]] -= 1
    return [Decimal(c).scaleb(-2) for c in cents], missing


def _check_pool(value: Any, name: str, allow_negative: bool = False) -> Decimal:
    amount = to_decimal(value, name)
    if amount < 0 and not allow_negative:
        raise ValidationError(f"{name} must be >= 0, got {amount}")
    return amount


def _index_by_id(records: Sequence[Any], kind: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for record in records:
        if record.id in out:
            raise ValidationError(f"Duplicate {kind} id {record.id!r}")
        out[record.id] = record
    return out


def _collect_weights(
    shares: Iterable[ItemShare],
    items_by_id: Mapping[str, Item],
    people_by_id: Mapping[str, Person],
    strict: bool,
) -> Dict[str, Dict[str, Decimal]]:
    weights: Dict[str, Dict[str, Decimal]] = {}
    for share in shares:
        if not isinstance(share, ItemShare):
            raise ValidationError(f"Expected ItemShare, got {type(share).__name__}")
        missing = []
        if share.item_id not in items_by_id:
            missing.append(f"item {share.item_id!r}")
        if share.person_id not in people_by_id:
            missing.append(f"person {share.person_id!r}")
        if missing:
            message = f"Share references unknown {' and '.join(missing)}"
            if strict:
                raise DanglingReferenceError(
                    message, details={"item_id": share.item_id, "person_id": share.person_id}
                )
            logger.warning("%s; dropping share", message)
            continue
        per_item = weights.setdefault(share.item_id, {})
        per_item[share.person_id] = per_item.get(share.person_id, ZERO) + share.weight
    return weights


def _split_pool(
    pool: Decimal,
    method: SplitMethod,
    people: Sequence[Person],
    subtotals: Mapping[str, Decimal],
    base: Decimal,
    include_zero_item_people: bool,
) -> Dict[str, Decimal]:
    out = {p.id: ZERO for p in people}
    if pool == 0:
        return out
    if method == SplitMethod.PROPORTIONAL:
        if base == 0:
            return out
        for p in people:
            out[p.id] = pool * subtotals[p.id] / base
        return out

    eligible = [p for p in people if include_zero_item_people or subtotals[p.id] > 0]
    if not eligible:
        logger.debug("No one eligible for even split of %s; leaving it unallocated", pool)
        return out
    each = pool / len(eligible)
    for p in eligible:
        out[p.id] = each
    return out


def compute_totals(
    items: Sequence[Item],
    shares: Sequence[ItemShare],
    people: Sequence[Person],
    tax_amount: Any,
    tip_amount: Any,
    tax_split_method: Any = SplitMethod.PROPORTIONAL,
    tip_split_method: Any = SplitMethod.PROPORTIONAL,
    include_zero_item_people: bool = True,
    discount: Any = 0,
    service_fee: Any = 0,
    *,
    strict: bool = True,
    unassigned_policy: Any = UnassignedPolicy.COUNT_IN_BASE,
) -> BillTotals:
    """
    Split a bill across people.

    `discount` is subtracted (a positive discount lowers the total; a negative
    one raises it). Discount and service fee are always split proportionally;
    tax and tip follow their own split method. With `strict` a share pointing
    at an unknown item or person raises DanglingReferenceError; otherwise the
    share is dropped with a warning.
    """
    items = list(items)
    people = list(people)
    for item in items:
        if not isinstance(item, Item):
            raise ValidationError(f"Expected Item, got {type(item).__name__}")
    for person in people:
        if not isinstance(person, Person):
            raise ValidationError(f"Expected Person, got {type(person).__name__}")

    tax = _check_pool(tax_amount, "tax")
    tip = _check_pool(tip_amount, "tip")
    fee = _check_pool(service_fee, "service_fee")
    disc = _check_pool(discount, "discount", allow_negative=True)
    tax_method = SplitMethod.parse(tax_split_method)
    tip_method = SplitMethod.parse(tip_split_method)
    policy = UnassignedPolicy.parse(unassigned_policy)

    if items and not people:
        raise EmptyParticipantsError(f"Bill has {len(items)} item(s) but no people to split them")

    items_by_id = _index_by_id(items, "item")
    people_by_id = _index_by_id(people, "person")
    weights = _collect_weights(shares, items_by_id, people_by_id, strict)

    subtotals: Dict[str, Decimal] = {p.id: ZERO for p in people}
    lines: Dict[str, List[ItemLine]] = {p.id: [] for p in people}
    subtotal = ZERO
    assigned = ZERO
    for item in items:
        price = item.price
        subtotal += price
        claims = weights.get(item.id)
        if not claims:
            continue
        assigned += price
        total_weight = sum(claims.values(), ZERO)
        for person_id, weight in claims.items():
            amount = price * weight / total_weight
            subtotals[person_id] += amount
            lines[person_id].append(
                ItemLine(
                    item_id=item.id,
                    label=item.label,
                    emoji=item.emoji,
                    price=money(price),
                    quantity=item.quantity,
                    weight=weight,
                    fraction=(weight / total_weight).quantize(FRACTION_PLACES, rounding=ROUND_HALF_UP),
                    share_amount=money(amount),
                )
            )
    unassigned = subtotal - assigned
    base = assigned if policy == UnassignedPolicy.EXCLUDE_FROM_BASE else subtotal

    tax_shares = _split_pool(tax, tax_method, people, subtotals, base, include_zero_item_people)
    tip_shares = _split_pool(tip, tip_method, people, subtotals, base, include_zero_item_people)
    discount_shares = _split_pool(disc, SplitMethod.PROPORTIONAL, people, subtotals, base, include_zero_item_people)
    fee_shares = _split_pool(fee, SplitMethod.PROPORTIONAL, people, subtotals, base, include_zero_item_people)

    exact_totals = [
        subtotals[p.id] - discount_shares[p.id] + fee_shares[p.id] + tax_shares[p.id] + tip_shares[p.id]
        for p in people
    ]
    exact_bill_total = subtotal - disc + fee + tax + tip
    bill_total = money(exact_bill_total)
    allocated = sum(exact_totals, ZERO)
    target = bill_total if abs(exact_bill_total - allocated) < EXACT_TOLERANCE else money(allocated)
    reconciled, distributed = reconcile_pennies(exact_totals, target)

    person_totals = []
    for person, exact, final in zip(people, exact_totals, reconciled):
        person_totals.append(
            PersonTotal(
                person_id=person.id,
                name=person.name,
                subtotal=money(subtotals[person.id]),
                discount_share=money(discount_shares[person.id]),
                service_fee_share=money(fee_shares[person.id]),
                tax_share=money(tax_shares[person.id]),
                tip_share=money(tip_shares[person.id]),
                total=final,
                rounding_adjustment=final - money(exact),
                items=tuple(lines[person.id]),
            )
        )

    unallocated = bill_total - sum(reconciled, ZERO)
    logger.debug(
        "Computed totals for %d item(s), %d person(s): total=%s unallocated=%s distributed_cents=%d",
        len(items),
        len(people),
        bill_total,
        unallocated,
        distributed,
    )
    return BillTotals(
        subtotal=money(subtotal),
        tax=money(tax),
        tip=money(tip),
        discount=money(disc),
        service_fee=money(fee),
        total=bill_total,
        assigned_subtotal=money(assigned),
        unassigned_subtotal=money(unassigned),
        unallocated=unallocated,
        person_totals=tuple(person_totals),
        reconciliation=Reconciliation(distributed_cents=distributed),
    )


def build_shares_from_people_items(
    items: Sequence[Any],
    people_items: Mapping[str, Optional[Sequence[Any]]],
) -> List[ItemShare]:
    """
    Turn a person -> claimed item ids map into ItemShares.

    Claimed entries may be item ids or dicts with an "id" key. An item claimed
    by k people gets weight 1/k for each of them. Ids not on the bill are skipped.
    """
    item_ids: List[str] = []
    for item in items:
        item_id = item.get("id") if isinstance(item, Mapping) else getattr(item, "id", item)
        item_ids.append(str(item_id))
    known = set(item_ids)

    claimants: Dict[str, List[str]] = {iid: [] for iid in item_ids}
    for person_id, claimed in people_items.items():
        for entry in claimed or []:
            item_id = entry.get("id") if isinstance(entry, Mapping) else entry
            if item_id is None:
                continue
            item_id = str(item_id)
            if item_id not in known:
                logger.debug("Skipping unknown item %r claimed by %r", item_id, person_id)
                continue
            if person_id not in claimants[item_id]:
                claimants[item_id].append(person_id)

    shares: List[ItemShare] = []
    for item_id in item_ids:
        owners = claimants[item_id]
        if not owners:
            continue
        weight = Decimal(1) / Decimal(len(owners))
        shares.extend(ItemShare(item_id=item_id, person_id=pid, weight=weight) for pid in owners)
    return shares


def validate_bill_totals(totals: BillTotals) -> Tuple[bool, Optional[str]]:
    charged = sum((p.total for p in totals.person_totals), ZERO)
    if charged + totals.unallocated != totals.total:
        return False, (
            f"Person totals {charged} plus unallocated {totals.unallocated} "
            f"do not match bill total {totals.total}"
        )
    if abs(totals.assigned_subtotal + totals.unassigned_subtotal - totals.subtotal) > CENT:
        return False, (
            f"Assigned {totals.assigned_subtotal} plus unassigned {totals.unassigned_subtotal} "
            f"do not match subtotal {totals.subtotal}"
        )
    for p in totals.person_totals:
        if p.total != p.total.quantize(CENT):
            return False, f"Total for {p.person_id} is not in whole cents: {p.total}"
    return True, None


def get_person_breakdown(totals: Optional[BillTotals], person_id: str) -> Optional[PersonTotal]:
    if totals is None:
        return None
    return next((p for p in totals.person_totals if p.person_id == person_id), None)


def get_person_total(totals: Optional[BillTotals], person_id: str) -> Decimal:
    breakdown = get_person_breakdown(totals, person_id)
    return breakdown.total if breakdown else ZERO


def _as_float(value: Decimal) -> float:
    return float(money(value))


def person_total_to_dict(p: PersonTotal, include_items: bool = True) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "person_id": p.person_id,
        "name": p.name,
        "subtotal": _as_float(p.subtotal),
        "discount_share": _as_float(p.discount_share),
        "service_fee_share": _as_float(p.service_fee_share),
        "tax_share": _as_float(p.tax_share),
        "tip_share": _as_float(p.tip_share),
        "total": _as_float(p.total),
        "rounding_adjustment": _as_float(p.rounding_adjustment),
    }
    if include_items:
        out["items"] = [
            {
                "item_id": line.item_id,
                "label": line.label,
                "emoji": line.emoji,
                "price": _as_float(line.price),
                "quantity": line.quantity,
                "weight": float(line.weight),
                "fraction": float(line.fraction),
                "share_amount": _as_float(line.share_amount),
            }
            for line in p.items
        ]
    return out


def totals_to_dict(totals: BillTotals, include_items: bool = True) -> Dict[str, Any]:
    return {
        "subtotal": _as_float(totals.subtotal),
        "tax": _as_float(totals.tax),
        "tip": _as_float(totals.tip),
        "discount": _as_float(totals.discount),
        "service_fee": _as_float(totals.service_fee),
        "total": _as_float(totals.total),
        "assigned_subtotal": _as_float(totals.assigned_subtotal),
        "unassigned_subtotal": _as_float(totals.unassigned_subtotal),
        "unallocated": _as_float(totals.unallocated),
        "person_totals": [person_total_to_dict(p, include_items) for p in totals.person_totals],
        "reconciliation": {
            "distributed_cents": totals.reconciliation.distributed_cents,
            "method": totals.reconciliation.method,
        },
    }
