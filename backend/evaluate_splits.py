import argparse
import json
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from bill_types import CENT, Item, ItemShare, Person
from errors import TotalsError
from log_setup import setup_logging
from totals import compute_totals, totals_to_dict, validate_bill_totals

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parent


def load_json(path: Path) -> Dict:
    return json.loads(path.read_text(encoding="utf-8-sig"))


def snapshot_to_kwargs(bill: Dict[str, Any]) -> Dict[str, Any]:
    items = [
        Item(
            id=str(row["id"]),
            label=row.get("label", row["id"]),
            unit_price=row.get("unit_price", row.get("price", 0)),
            quantity=row.get("quantity", 1),
            emoji=row.get("emoji"),
        )
        for row in bill.get("items", [])
    ]
    people = [
        Person(id=str(row["id"]), name=row.get("name", row["id"]), is_paid=bool(row.get("is_paid", False)))
        for row in bill.get("people", [])
    ]
    shares = [
        ItemShare(item_id=str(row["item_id"]), person_id=str(row["person_id"]), weight=row.get("weight", 1))
        for row in bill.get("shares", [])
    ]
    return {
        "items": items,
        "shares": shares,
        "people": people,
        "tax_amount": bill.get("tax", 0),
        "tip_amount": bill.get("tip", 0),
        "tax_split_method": bill.get("tax_split_method", "proportional"),
        "tip_split_method": bill.get("tip_split_method", "proportional"),
        "include_zero_item_people": bool(bill.get("include_zero_item_people", True)),
        "discount": bill.get("discount", 0),
        "service_fee": bill.get("service_fee", 0),
    }


def cents_equal(a: Any, b: Any) -> bool:
    return Decimal(str(a)).quantize(CENT) == Decimal(str(b)).quantize(CENT)


def evaluate_one(case_path: Path, strict: bool = True) -> Dict[str, Any]:
    case = load_json(case_path)
    expected = case.get("expected", {})
    try:
        totals = compute_totals(**snapshot_to_kwargs(case.get("bill", {})), strict=strict)
    except TotalsError as exc:
        return {"error": f"{exc.code}: {exc.message}"}

    valid, validation_error = validate_bill_totals(totals)
    got = {p.person_id: p.total for p in totals.person_totals}
    expected_people = expected.get("people", {})
    mismatches: List[Dict[str, Any]] = []
    for person_id, want in expected_people.items():
        have = got.get(person_id)
        if have is None or not cents_equal(have, want):
            mismatches.append({"person_id": person_id, "expected": want, "got": float(have) if have is not None else None})

    total_match = "total" not in expected or cents_equal(totals.total, expected["total"])
    return {
        "name": case.get("name", case_path.stem),
        "people_checked": len(expected_people),
        "people_matched": len(expected_people) - len(mismatches),
        "mismatches": mismatches,
        "total_match": total_match,
        "conservation_ok": valid,
        "conservation_error": validation_error,
        "totals": totals_to_dict(totals, include_items=False),
    }


def pct(n: float, d: float) -> float:
    if d <= 0:
        return 0.0
    return (100.0 * n) / d


def run_eval(case_dir: Path, report_dir: Optional[Path], strict: bool = True) -> Dict[str, Any]:
    case_paths = sorted(case_dir.glob("*.json"))
    if not case_paths:
        print(f"No bill cases found in {case_dir}")
        return {}

    counts = {"cases": 0, "skipped": 0, "people_checked": 0, "people_matched": 0, "total_matches": 0, "conserved": 0}
    hard_cases: List[Tuple[str, str]] = []
    per_case: List[Dict[str, Any]] = []

    for path in case_paths:
        metrics = evaluate_one(path, strict=strict)
        if "error" in metrics:
            counts["skipped"] += 1
            hard_cases.append((path.name, metrics["error"]))
            continue
        counts["cases"] += 1
        counts["people_checked"] += metrics["people_checked"]
        counts["people_matched"] += metrics["people_matched"]
        counts["total_matches"] += 1 if metrics["total_match"] else 0
        counts["conserved"] += 1 if metrics["conservation_ok"] else 0
        per_case.append({"case": path.name, **metrics})
        if metrics["mismatches"] or not metrics["total_match"] or not metrics["conservation_ok"]:
            reason = (
                f"mismatches={len(metrics['mismatches'])}, total_match={metrics['total_match']}, "
                f"conservation_ok={metrics['conservation_ok']}"
            )
            hard_cases.append((path.name, reason))

    summary = {
        "cases_evaluated": counts["cases"],
        "cases_skipped": counts["skipped"],
        "person_match_pct": round(pct(counts["people_matched"], counts["people_checked"]), 2),
        "total_match_pct": round(pct(counts["total_matches"], counts["cases"]), 2),
        "conservation_pct": round(pct(counts["conserved"], counts["cases"]), 2),
    }
    print("=== Split Check ===")
    print(f"Cases evaluated:    {summary['cases_evaluated']}")
    print(f"Cases skipped:      {summary['cases_skipped']}")
    print("---")
    print(f"Person Match:       {summary['person_match_pct']:.2f}%")
    print(f"Total Match:        {summary['total_match_pct']:.2f}%")
    print(f"Conservation:       {summary['conservation_pct']:.2f}%")

    if hard_cases:
        print("\nCases needing attention:")
        for name, reason in hard_cases[:20]:
            print(f"- {name}: {reason}")

    if report_dir is not None:
        report_dir.mkdir(parents=True, exist_ok=True)
        report_path = report_dir / "split_check_report.json"
        report = {"summary": summary, "hard_cases": hard_cases, "per_case": per_case}
        report_path.write_text(json.dumps(report, indent=2), encoding="utf-8")
        print(f"\nDetailed report written to: {report_path}")
    return summary


def main_eval() -> None:
    parser = argparse.ArgumentParser(description="Run stored bill snapshots through the totals engine")
    parser.add_argument("--cases", type=Path, default=ROOT / "test_bills" / "cases")
    parser.add_argument("--report-dir", type=Path, default=ROOT / "test_bills" / "reports")
    parser.add_argument("--no-report", action="store_true", help="Print the summary only")
    parser.add_argument("--lenient", action="store_true", help="Drop shares that point at unknown items/people")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    setup_logging(args.log_level)
    run_eval(args.cases, None if args.no_report else args.report_dir, strict=not args.lenient)


if __name__ == "__main__":
    main_eval()
