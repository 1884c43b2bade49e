"""
Bill data access.

Request handlers talk to a BillStore handed to them through FastAPI's
dependency injection; nothing reads a process-wide singleton. The in-memory
store lives for the lifetime of the process and is what the API and tests use.
"""
from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Protocol

from bill_types import ZERO, Item, ItemShare, Person, SplitMethod


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Bill:
    id: str
    title: str
    place: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    items: List[Item] = field(default_factory=list)
    people: List[Person] = field(default_factory=list)
    shares: List[ItemShare] = field(default_factory=list)
    tax: Decimal = ZERO
    tip: Decimal = ZERO
    discount: Decimal = ZERO
    service_fee: Decimal = ZERO
    tax_split_method: SplitMethod = SplitMethod.PROPORTIONAL
    tip_split_method: SplitMethod = SplitMethod.PROPORTIONAL
    include_zero_item_people: bool = True

    def find_item(self, item_id: str) -> Optional[Item]:
        return next((i for i in self.items if i.id == item_id), None)

    def find_person(self, person_id: str) -> Optional[Person]:
        return next((p for p in self.people if p.id == person_id), None)

    def remove_person(self, person_id: str) -> bool:
        before = len(self.people)
        self.people = [p for p in self.people if p.id != person_id]
        if len(self.people) == before:
            return False
        # Orphaned shares are the caller's to clean up; the totals engine rejects them.
        self.shares = [s for s in self.shares if s.person_id != person_id]
        return True

    def remove_item(self, item_id: str) -> bool:
        before = len(self.items)
        self.items = [i for i in self.items if i.id != item_id]
        if len(self.items) == before:
            return False
        self.shares = [s for s in self.shares if s.item_id != item_id]
        return True


class BillStore(Protocol):
    def create_bill(self, bill: Bill) -> Bill:
        ...

    def get_bill(self, bill_id: str) -> Optional[Bill]:
        ...

    def save_bill(self, bill: Bill) -> Bill:
        ...

    def list_bills(self) -> List[Bill]:
        ...

    def delete_bill(self, bill_id: str) -> bool:
        ...


class InMemoryBillStore:
    """Dict-backed store. Hands out copies so callers never share a Bill across requests."""

    def __init__(self) -> None:
        self._bills: Dict[str, Bill] = {}
        self._lock = threading.Lock()

    def create_bill(self, bill: Bill) -> Bill:
        with self._lock:
            if bill.id in self._bills:
                raise KeyError(f"Bill {bill.id} already exists")
            self._bills[bill.id] = copy.deepcopy(bill)
        return bill

    def get_bill(self, bill_id: str) -> Optional[Bill]:
        with self._lock:
            bill = self._bills.get(bill_id)
            return copy.deepcopy(bill) if bill else None

    def save_bill(self, bill: Bill) -> Bill:
        bill.updated_at = utc_now_iso()
        with self._lock:
            if bill.id not in self._bills:
                raise KeyError(f"Bill {bill.id} not found")
            self._bills[bill.id] = copy.deepcopy(bill)
        return bill

    def list_bills(self) -> List[Bill]:
        with self._lock:
            bills = [copy.deepcopy(b) for b in self._bills.values()]
        return sorted(bills, key=lambda b: b.created_at, reverse=True)

    def delete_bill(self, bill_id: str) -> bool:
        with self._lock:
            return self._bills.pop(bill_id, None) is not None
