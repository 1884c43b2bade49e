import unittest
from decimal import Decimal

from bill_types import Item, ItemShare, Person, SplitMethod, UnassignedPolicy
from errors import DanglingReferenceError, EmptyParticipantsError, ValidationError
from totals import compute_totals


def D(value: str) -> Decimal:
    return Decimal(value)


def person(totals, person_id):
    return next(p for p in totals.person_totals if p.person_id == person_id)


class TotalsRegressionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.alice = Person(id="a", name="Alice")
        self.bob = Person(id="b", name="Bob")

    def test_shared_item_with_proportional_tax(self) -> None:
        items = [Item(id="itm_1", label="Pasta", unit_price="20.00")]
        shares = [ItemShare("itm_1", "a", 1), ItemShare("itm_1", "b", 1)]
        totals = compute_totals(items, shares, [self.alice, self.bob], "2.00", 0, SplitMethod.PROPORTIONAL)
        for pid in ("a", "b"):
            p = person(totals, pid)
            self.assertEqual(p.subtotal, D("10.00"))
            self.assertEqual(p.tax_share, D("1.00"))
            self.assertEqual(p.total, D("11.00"))
        self.assertEqual(totals.total, D("22.00"))
        self.assertEqual(totals.unallocated, D("0"))

    def test_even_tip_includes_zero_item_people(self) -> None:
        items = [Item(id="itm_1", label="Steak", unit_price="30.00")]
        shares = [ItemShare("itm_1", "a", 1)]
        totals = compute_totals(
            items, shares, [self.alice, self.bob], 0, "10.00",
            SplitMethod.PROPORTIONAL, SplitMethod.EVEN, True,
        )
        self.assertEqual(person(totals, "a").tip_share, D("5.00"))
        self.assertEqual(person(totals, "b").tip_share, D("5.00"))
        self.assertEqual(person(totals, "b").subtotal, D("0.00"))
        self.assertEqual(person(totals, "b").total, D("5.00"))
        self.assertEqual(person(totals, "a").total, D("35.00"))

    def test_even_tip_excludes_zero_item_people(self) -> None:
        items = [Item(id="itm_1", label="Steak", unit_price="30.00")]
        shares = [ItemShare("itm_1", "a", 1)]
        totals = compute_totals(
            items, shares, [self.alice, self.bob], 0, "10.00",
            SplitMethod.PROPORTIONAL, SplitMethod.EVEN, False,
        )
        self.assertEqual(person(totals, "a").tip_share, D("10.00"))
        self.assertEqual(person(totals, "b").tip_share, D("0"))
        self.assertEqual(person(totals, "b").total, D("0"))
        self.assertEqual(totals.total, D("40.00"))

    def test_even_tax_is_identical_for_everyone(self) -> None:
        carol = Person(id="c", name="Carol")
        items = [
            Item(id="itm_1", label="Pizza", unit_price="20.00"),
            Item(id="itm_2", label="Beer", unit_price="8.00"),
        ]
        shares = [ItemShare("itm_1", "a", 1), ItemShare("itm_2", "b", 1)]
        totals = compute_totals(
            items, shares, [self.alice, self.bob, carol], "3.00", "6.00",
            SplitMethod.EVEN, SplitMethod.EVEN, True,
        )
        for p in totals.person_totals:
            self.assertEqual(p.tax_share, D("1.00"))
            self.assertEqual(p.tip_share, D("2.00"))

    def test_empty_bill_is_all_zero(self) -> None:
        totals = compute_totals([], [], [], 0, 0)
        self.assertEqual(totals.subtotal, D("0"))
        self.assertEqual(totals.tax, D("0"))
        self.assertEqual(totals.tip, D("0"))
        self.assertEqual(totals.discount, D("0"))
        self.assertEqual(totals.service_fee, D("0"))
        self.assertEqual(totals.total, D("0"))
        self.assertEqual(totals.person_totals, ())

    def test_weighted_split(self) -> None:
        items = [Item(id="itm_1", label="Nachos", unit_price="12.00")]
        shares = [ItemShare("itm_1", "a", 1), ItemShare("itm_1", "b", 3)]
        totals = compute_totals(items, shares, [self.alice, self.bob], 0, 0)
        self.assertEqual(person(totals, "a").subtotal, D("3.00"))
        self.assertEqual(person(totals, "b").subtotal, D("9.00"))
        line = person(totals, "a").items[0]
        self.assertEqual(line.item_id, "itm_1")
        self.assertEqual(line.fraction, D("0.25"))
        self.assertEqual(line.share_amount, D("3.00"))

    def test_proportional_shares_follow_subtotals(self) -> None:
        items = [
            Item(id="itm_1", label="Curry", unit_price="20.00"),
            Item(id="itm_2", label="Naan", unit_price="10.00"),
        ]
        shares = [ItemShare("itm_1", "a", 1), ItemShare("itm_2", "b", 1)]
        totals = compute_totals(items, shares, [self.alice, self.bob], "3.00", "4.50")
        a, b = person(totals, "a"), person(totals, "b")
        self.assertEqual(a.tax_share, b.tax_share * 2)
        self.assertEqual(a.tip_share, b.tip_share * 2)
        self.assertEqual(a.tax_share, D("2.00"))
        self.assertEqual(b.tip_share, D("1.50"))

    def test_quantity_multiplies_unit_price(self) -> None:
        items = [Item(id="itm_1", label="Soda", unit_price="2.99", quantity=2)]
        totals = compute_totals(items, [ItemShare("itm_1", "a", 1)], [self.alice], 0, 0)
        self.assertEqual(totals.subtotal, D("5.98"))
        self.assertEqual(person(totals, "a").total, D("5.98"))

    def test_discount_is_split_proportionally(self) -> None:
        items = [
            Item(id="itm_1", label="Pizza", unit_price="20.00"),
            Item(id="itm_2", label="Beer", unit_price="8.00"),
        ]
        shares = [ItemShare("itm_1", "a", 1), ItemShare("itm_2", "b", 1)]
        totals = compute_totals(items, shares, [self.alice, self.bob], 0, 0, discount="7.00")
        self.assertEqual(totals.total, D("21.00"))
        self.assertEqual(person(totals, "a").discount_share, D("5.00"))
        self.assertEqual(person(totals, "a").total, D("15.00"))
        self.assertEqual(person(totals, "b").discount_share, D("2.00"))
        self.assertEqual(person(totals, "b").total, D("6.00"))

    def test_negative_discount_acts_as_surcharge(self) -> None:
        items = [
            Item(id="itm_1", label="Tacos", unit_price="10.00"),
            Item(id="itm_2", label="Burrito", unit_price="10.00"),
        ]
        shares = [ItemShare("itm_1", "a", 1), ItemShare("itm_2", "b", 1)]
        totals = compute_totals(items, shares, [self.alice, self.bob], 0, 0, discount="-2.00")
        self.assertEqual(totals.total, D("22.00"))
        self.assertEqual(person(totals, "a").discount_share, D("-1.00"))
        self.assertEqual(person(totals, "a").total, D("11.00"))

    def test_service_fee_is_split_proportionally(self) -> None:
        items = [
            Item(id="itm_1", label="Pizza", unit_price="20.00"),
            Item(id="itm_2", label="Beer", unit_price="8.00"),
        ]
        shares = [ItemShare("itm_1", "a", 1), ItemShare("itm_2", "b", 1)]
        totals = compute_totals(items, shares, [self.alice, self.bob], 0, 0, service_fee="5.60")
        self.assertEqual(totals.total, D("33.60"))
        self.assertEqual(person(totals, "a").service_fee_share, D("4.00"))
        self.assertEqual(person(totals, "a").total, D("24.00"))
        self.assertEqual(person(totals, "b").service_fee_share, D("1.60"))
        self.assertEqual(person(totals, "b").total, D("9.60"))

    def test_three_way_split_reconciles_pennies(self) -> None:
        carol = Person(id="c", name="Carol")
        items = [Item(id="itm_1", label="Pizza", unit_price="10.00")]
        shares = [ItemShare("itm_1", pid, 1) for pid in ("a", "b", "c")]
        totals = compute_totals(items, shares, [self.alice, self.bob, carol], 0, 0)
        self.assertEqual([p.total for p in totals.person_totals], [D("3.34"), D("3.33"), D("3.33")])
        self.assertEqual(totals.reconciliation.distributed_cents, 1)
        self.assertEqual(totals.reconciliation.method, "largest_remainder")
        self.assertEqual(person(totals, "a").rounding_adjustment, D("0.01"))
        self.assertEqual(person(totals, "b").rounding_adjustment, D("0"))

    def test_conservation_with_awkward_amounts(self) -> None:
        people = [Person(id=f"p{i}", name=f"Guest {i}") for i in range(7)]
        items = [
            Item(id="itm_1", label="Platter", unit_price="19.99"),
            Item(id="itm_2", label="Cocktail", unit_price="7.49", quantity=3),
            Item(id="itm_3", label="Mint", unit_price="0.01"),
        ]
        shares = [ItemShare("itm_1", p.id, 1) for p in people]
        shares += [ItemShare("itm_2", "p0", 1), ItemShare("itm_2", "p1", 2), ItemShare("itm_2", "p2", 3)]
        shares.append(ItemShare("itm_3", "p6", 1))
        totals = compute_totals(
            items, shares, people, "3.17", "5.00",
            SplitMethod.PROPORTIONAL, SplitMethod.EVEN, True,
            discount="2.50", service_fee="1.11",
        )
        self.assertEqual(totals.subtotal, D("42.47"))
        self.assertEqual(totals.total, D("49.25"))
        self.assertEqual(sum(p.total for p in totals.person_totals), totals.total)
        self.assertEqual(totals.unallocated, D("0"))
        for p in totals.person_totals:
            self.assertEqual(p.total, p.total.quantize(D("0.01")))
            self.assertLessEqual(abs(p.rounding_adjustment), D("0.01"))

    def test_unassigned_item_counts_in_subtotal(self) -> None:
        items = [
            Item(id="itm_1", label="Burger", unit_price="20.00"),
            Item(id="itm_2", label="Fries", unit_price="5.00"),
        ]
        shares = [ItemShare("itm_1", "a", 1)]
        totals = compute_totals(items, shares, [self.alice], "5.00", 0)
        self.assertEqual(totals.subtotal, D("25.00"))
        self.assertEqual(totals.assigned_subtotal, D("20.00"))
        self.assertEqual(totals.unassigned_subtotal, D("5.00"))
        self.assertEqual(person(totals, "a").tax_share, D("4.00"))
        self.assertEqual(person(totals, "a").total, D("24.00"))
        self.assertEqual(totals.total, D("30.00"))
        self.assertEqual(totals.unallocated, D("6.00"))

    def test_unassigned_item_excluded_from_base(self) -> None:
        items = [
            Item(id="itm_1", label="Burger", unit_price="20.00"),
            Item(id="itm_2", label="Fries", unit_price="5.00"),
        ]
        shares = [ItemShare("itm_1", "a", 1)]
        totals = compute_totals(
            items, shares, [self.alice], "5.00", 0,
            unassigned_policy=UnassignedPolicy.EXCLUDE_FROM_BASE,
        )
        self.assertEqual(totals.subtotal, D("25.00"))
        self.assertEqual(person(totals, "a").tax_share, D("5.00"))
        self.assertEqual(person(totals, "a").total, D("25.00"))
        self.assertEqual(totals.unallocated, D("5.00"))

    def test_even_split_with_nobody_eligible_stays_unallocated(self) -> None:
        items = [Item(id="itm_1", label="Wings", unit_price="8.00")]
        totals = compute_totals(
            items, [], [self.alice, self.bob], 0, "10.00",
            SplitMethod.PROPORTIONAL, SplitMethod.EVEN, False,
        )
        self.assertEqual([p.total for p in totals.person_totals], [D("0"), D("0")])
        self.assertEqual(totals.total, D("18.00"))
        self.assertEqual(totals.unallocated, D("18.00"))

    def test_people_without_items_and_no_items(self) -> None:
        totals = compute_totals([], [], [self.alice, self.bob], 0, "3.00", "even", "even", True)
        self.assertEqual(person(totals, "a").tip_share, D("1.50"))
        self.assertEqual(totals.total, D("3.00"))

    def test_split_methods_accept_strings(self) -> None:
        items = [Item(id="itm_1", label="Soup", unit_price="9.00")]
        totals = compute_totals(items, [ItemShare("itm_1", "a", 1)], [self.alice], 1, 1, "even", "proportional")
        self.assertEqual(totals.total, D("11.00"))

    def test_identical_inputs_give_identical_output(self) -> None:
        items = [Item(id="itm_1", label="Pizza", unit_price="10.00")]
        shares = [ItemShare("itm_1", "a", 2), ItemShare("itm_1", "b", 1)]
        args = (items, shares, [self.alice, self.bob], "1.23", "4.56", "even", "proportional", False, "0.50", "0.75")
        self.assertEqual(compute_totals(*args), compute_totals(*args))

    def test_items_without_people_fail(self) -> None:
        items = [Item(id="itm_1", label="Pizza", unit_price="10.00")]
        with self.assertRaises(EmptyParticipantsError):
            compute_totals(items, [], [], 0, 0)

    def test_dangling_share_fails_in_strict_mode(self) -> None:
        items = [Item(id="itm_1", label="Pizza", unit_price="10.00")]
        with self.assertRaises(DanglingReferenceError) as ctx:
            compute_totals(items, [ItemShare("itm_1", "ghost", 1)], [self.alice], 0, 0)
        self.assertEqual(ctx.exception.details["person_id"], "ghost")
        with self.assertRaises(DanglingReferenceError):
            compute_totals(items, [ItemShare("itm_9", "a", 1)], [self.alice], 0, 0)

    def test_dangling_share_is_dropped_in_lenient_mode(self) -> None:
        items = [Item(id="itm_1", label="Pizza", unit_price="10.00")]
        shares = [ItemShare("itm_1", "ghost", 1), ItemShare("itm_1", "a", 1)]
        with self.assertLogs("totals", level="WARNING"):
            totals = compute_totals(items, shares, [self.alice], 0, 0, strict=False)
        self.assertEqual(person(totals, "a").total, D("10.00"))

    def test_rejects_bad_pools_and_methods(self) -> None:
        with self.assertRaises(ValidationError):
            compute_totals([], [], [], "-1.00", 0)
        with self.assertRaises(ValidationError):
            compute_totals([], [], [], 0, -5)
        with self.assertRaises(ValidationError):
            compute_totals([], [], [], 0, 0, service_fee="-0.01")
        with self.assertRaises(ValidationError):
            compute_totals([], [], [], 0, 0, "by-vibes")

    def test_rejects_duplicate_ids(self) -> None:
        items = [
            Item(id="itm_1", label="Pizza", unit_price="10.00"),
            Item(id="itm_1", label="Pizza again", unit_price="10.00"),
        ]
        with self.assertRaises(ValidationError):
            compute_totals(items, [], [self.alice], 0, 0)
        with self.assertRaises(ValidationError):
            compute_totals([], [], [self.alice, Person(id="a", name="Alias")], 0, 0)


if __name__ == "__main__":
    unittest.main()
