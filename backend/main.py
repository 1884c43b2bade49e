import logging
import re
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import settings
from bill_store import Bill, BillStore, InMemoryBillStore
from bill_types import ZERO, BillTotals, Item, ItemShare, Person, SplitMethod, to_decimal
from errors import EmptyParticipantsError, TotalsError, ValidationError
from log_setup import setup_logging
from totals import build_shares_from_people_items, compute_totals, money, totals_to_dict

setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.bill_store = InMemoryBillStore()


def get_bill_store(request: Request) -> BillStore:
    return request.app.state.bill_store


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    logger.info(
        "%s %s -> %s",
        request.method,
        request.url.path,
        response.status_code,
        extra={"duration_ms": duration_ms},
    )
    return response


@app.exception_handler(TotalsError)
async def totals_error_handler(request: Request, exc: TotalsError) -> JSONResponse:
    status_code = 422 if isinstance(exc, ValidationError) else 409
    logger.warning("Totals error on %s: %s", request.url.path, exc.message, extra={"code": exc.code})
    return JSONResponse(status_code=status_code, content=exc.to_dict())


class ItemPayload(BaseModel):
    id: Optional[str] = None
    label: str = Field(min_length=1)
    unit_price: Optional[float] = None
    price: Optional[float] = None
    quantity: int = 1
    emoji: Optional[str] = None


class PersonPayload(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=1)
    is_paid: bool = False


class SharePayload(BaseModel):
    item_id: str = Field(min_length=1)
    person_id: str = Field(min_length=1)
    weight: float = Field(default=1, gt=0, le=100)


class ParsedReceiptItem(BaseModel):
    label: str = Field(min_length=1)
    price: float
    quantity: int = 1
    emoji: Optional[str] = None


class ParsedReceipt(BaseModel):
    items: List[ParsedReceiptItem] = Field(default_factory=list)
    tax: float = 0
    tip: float = 0
    discount: float = 0
    service_fee: float = 0
    place: Optional[str] = None


class BillSettingsPayload(BaseModel):
    tax_split_method: SplitMethod = SplitMethod.PROPORTIONAL
    tip_split_method: SplitMethod = SplitMethod.PROPORTIONAL
    include_zero_item_people: bool = settings.DEFAULT_INCLUDE_ZERO_ITEM_PEOPLE


class ManualBillRequest(BillSettingsPayload):
    source: Literal["manual"]
    title: Optional[str] = None
    place: Optional[str] = None
    items: List[ItemPayload] = Field(default_factory=list)
    people: List[PersonPayload] = Field(default_factory=list)
    tax: float = Field(default=0, ge=0)
    tip: float = Field(default=0, ge=0)
    discount: float = 0
    service_fee: float = Field(default=0, ge=0)


class OcrBillRequest(BillSettingsPayload):
    source: Literal["ocr"]
    title: Optional[str] = None
    parsed: ParsedReceipt
    people: List[PersonPayload] = Field(default_factory=list)


CreateBillRequest = Annotated[Union[ManualBillRequest, OcrBillRequest], Body(discriminator="source")]


class UpdateBillRequest(BaseModel):
    title: Optional[str] = None
    place: Optional[str] = None
    tax: Optional[float] = Field(default=None, ge=0)
    tip: Optional[float] = Field(default=None, ge=0)
    discount: Optional[float] = None
    service_fee: Optional[float] = Field(default=None, ge=0)
    tax_split_method: Optional[SplitMethod] = None
    tip_split_method: Optional[SplitMethod] = None
    include_zero_item_people: Optional[bool] = None


class ReplaceSharesRequest(BaseModel):
    shares: List[SharePayload]


class AssignRequest(BaseModel):
    assignments: Dict[str, List[str]]


class MarkPaidRequest(BaseModel):
    is_paid: bool = True


def new_short_id() -> str:
    return str(uuid.uuid4())[:8]


def next_item_id(items: List[Item]) -> str:
    max_n = 0
    for item in items:
        m = re.match(r"^itm_(\d+)$", item.id)
        if not m:
            continue
        max_n = max(max_n, int(m.group(1)))
    return f"itm_{max_n + 1}"


def build_item(payload: ItemPayload, existing: List[Item]) -> Item:
    quantity = payload.quantity
    if payload.unit_price is not None:
        unit_price = to_decimal(payload.unit_price, f"unit_price of {payload.label}")
    elif payload.price is not None:
        if quantity < 1:
            raise ValidationError(f"quantity of {payload.label} must be >= 1, got {quantity}")
        # A receipt line total is authoritative; derive the unit price from it.
        unit_price = to_decimal(payload.price, f"price of {payload.label}") / quantity
    else:
        raise ValidationError(f"Provide unit_price or price for {payload.label}")
    return Item(
        id=payload.id or next_item_id(existing),
        label=payload.label.strip(),
        unit_price=unit_price,
        quantity=quantity,
        emoji=payload.emoji,
    )


def build_items(payloads: List[ItemPayload]) -> List[Item]:
    items: List[Item] = []
    for payload in payloads:
        item = build_item(payload, items)
        if any(i.id == item.id for i in items):
            raise ValidationError(f"Duplicate item id {item.id!r}")
        items.append(item)
    return items


def build_people(payloads: List[PersonPayload]) -> List[Person]:
    people: List[Person] = []
    for payload in payloads:
        person = Person(id=payload.id or new_short_id(), name=payload.name.strip(), is_paid=payload.is_paid)
        if any(p.id == person.id for p in people):
            raise ValidationError(f"Duplicate person id {person.id!r}")
        people.append(person)
    return people


def fetch_bill(store: BillStore, bill_id: str) -> Bill:
    bill = store.get_bill(bill_id)
    if not bill:
        raise HTTPException(status_code=404, detail="Bill not found")
    return bill


def compute_bill_totals(bill: Bill) -> BillTotals:
    return compute_totals(
        bill.items,
        bill.shares,
        bill.people,
        bill.tax,
        bill.tip,
        bill.tax_split_method,
        bill.tip_split_method,
        bill.include_zero_item_people,
        discount=bill.discount,
        service_fee=bill.service_fee,
        strict=settings.STRICT_SHARE_REFERENCES,
        unassigned_policy=settings.UNASSIGNED_POLICY,
    )


def item_to_dict(item: Item) -> Dict[str, Any]:
    return {
        "id": item.id,
        "label": item.label,
        "emoji": item.emoji,
        "unit_price": float(item.unit_price),
        "quantity": item.quantity,
        "price": float(money(item.price)),
    }


def bill_summary(bill: Bill) -> Dict[str, Any]:
    subtotal = sum((i.price for i in bill.items), ZERO)
    total_amount = money(subtotal - bill.discount + bill.service_fee + bill.tax + bill.tip)
    return {
        "id": bill.id,
        "title": bill.title,
        "place": bill.place,
        "created_at": bill.created_at,
        "updated_at": bill.updated_at,
        "item_count": len(bill.items),
        "people_count": len(bill.people),
        "subtotal": float(money(subtotal)),
        "total_amount": float(total_amount),
    }


def bill_state(bill: Bill) -> Dict[str, Any]:
    state = bill_summary(bill)
    state.update(
        {
            "tax": float(money(bill.tax)),
            "tip": float(money(bill.tip)),
            "discount": float(money(bill.discount)),
            "service_fee": float(money(bill.service_fee)),
            "tax_split_method": bill.tax_split_method.value,
            "tip_split_method": bill.tip_split_method.value,
            "include_zero_item_people": bill.include_zero_item_people,
            "items": [item_to_dict(i) for i in bill.items],
            "people": [{"id": p.id, "name": p.name, "is_paid": p.is_paid} for p in bill.people],
            "shares": [
                {"item_id": s.item_id, "person_id": s.person_id, "weight": float(s.weight)} for s in bill.shares
            ],
        }
    )
    return state


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "time_utc": datetime.now(timezone.utc).isoformat(),
        "strict_share_references": settings.STRICT_SHARE_REFERENCES,
        "unassigned_policy": settings.UNASSIGNED_POLICY,
    }


@app.get("/version")
async def version():
    return {"app": settings.APP_NAME, "version": settings.APP_VERSION}


@app.post("/bills")
async def create_bill(req: CreateBillRequest, store: BillStore = Depends(get_bill_store)):
    bill_id = new_short_id()
    if isinstance(req, OcrBillRequest):
        parsed = req.parsed
        items = build_items(
            [
                ItemPayload(label=row.label, price=row.price, quantity=row.quantity, emoji=row.emoji)
                for row in parsed.items
            ]
        )
        place = parsed.place
        tax, tip, discount, service_fee = parsed.tax, parsed.tip, parsed.discount, parsed.service_fee
    else:
        items = build_items(req.items)
        place = req.place
        tax, tip, discount, service_fee = req.tax, req.tip, req.discount, req.service_fee

    bill = Bill(
        id=bill_id,
        title=(req.title or "").strip() or f"Bill-{bill_id}",
        place=place,
        items=items,
        people=build_people(req.people),
        tax=to_decimal(tax, "tax"),
        tip=to_decimal(tip, "tip"),
        discount=to_decimal(discount, "discount"),
        service_fee=to_decimal(service_fee, "service_fee"),
        tax_split_method=req.tax_split_method,
        tip_split_method=req.tip_split_method,
        include_zero_item_people=req.include_zero_item_people,
    )
    for name, value in (("tax", bill.tax), ("tip", bill.tip), ("service_fee", bill.service_fee)):
        if value < 0:
            raise ValidationError(f"{name} must be >= 0, got {value}")
    store.create_bill(bill)
    logger.info("Created bill from %s with %d item(s)", req.source, len(items), extra={"bill_id": bill_id})
    return bill_state(bill)


@app.get("/bills")
async def list_bills(store: BillStore = Depends(get_bill_store)):
    return {"bills": [bill_summary(b) for b in store.list_bills()]}


@app.get("/bills/{bill_id}")
async def get_bill(bill_id: str, store: BillStore = Depends(get_bill_store)):
    bill = fetch_bill(store, bill_id)
    state = bill_state(bill)
    try:
        state["totals"] = totals_to_dict(compute_bill_totals(bill))
        state["totals_error"] = None
    except EmptyParticipantsError as exc:
        # A freshly scanned bill has items before anyone has joined.
        state["totals"] = None
        state["totals_error"] = exc.to_dict()
    return state


@app.patch("/bills/{bill_id}")
async def update_bill(bill_id: str, req: UpdateBillRequest, store: BillStore = Depends(get_bill_store)):
    bill = fetch_bill(store, bill_id)
    if req.title is not None:
        title = req.title.strip()
        if not title:
            raise HTTPException(status_code=400, detail="Title is too short")
        bill.title = title
    if req.place is not None:
        bill.place = req.place.strip() or None
    for name in ("tax", "tip", "discount", "service_fee"):
        value = getattr(req, name)
        if value is not None:
            setattr(bill, name, to_decimal(value, name))
    if req.tax_split_method is not None:
        bill.tax_split_method = req.tax_split_method
    if req.tip_split_method is not None:
        bill.tip_split_method = req.tip_split_method
    if req.include_zero_item_people is not None:
        bill.include_zero_item_people = req.include_zero_item_people
    store.save_bill(bill)
    return bill_state(bill)


@app.delete("/bills/{bill_id}")
async def delete_bill(bill_id: str, store: BillStore = Depends(get_bill_store)):
    if not store.delete_bill(bill_id):
        raise HTTPException(status_code=404, detail="Bill not found")
    logger.info("Deleted bill", extra={"bill_id": bill_id})
    return {"ok": True, "bill_id": bill_id}


@app.post("/bills/{bill_id}/people")
async def add_person(bill_id: str, req: PersonPayload, store: BillStore = Depends(get_bill_store)):
    bill = fetch_bill(store, bill_id)
    person = Person(id=req.id or new_short_id(), name=req.name.strip(), is_paid=req.is_paid)
    if bill.find_person(person.id):
        raise HTTPException(status_code=400, detail=f"Person {person.id} already on bill")
    bill.people.append(person)
    store.save_bill(bill)
    return {"ok": True, "bill_id": bill_id, "person": {"id": person.id, "name": person.name, "is_paid": person.is_paid}}


@app.delete("/bills/{bill_id}/people/{person_id}")
async def remove_person(bill_id: str, person_id: str, store: BillStore = Depends(get_bill_store)):
    bill = fetch_bill(store, bill_id)
    if not bill.remove_person(person_id):
        raise HTTPException(status_code=404, detail="Person not found")
    store.save_bill(bill)
    return {"ok": True, "bill_id": bill_id, "person_id": person_id}


@app.post("/bills/{bill_id}/people/{person_id}/paid")
async def mark_paid(bill_id: str, person_id: str, req: MarkPaidRequest, store: BillStore = Depends(get_bill_store)):
    bill = fetch_bill(store, bill_id)
    person = bill.find_person(person_id)
    if not person:
        raise HTTPException(status_code=404, detail="Person not found")
    bill.people = [replace(p, is_paid=req.is_paid) if p.id == person_id else p for p in bill.people]
    store.save_bill(bill)
    return {"ok": True, "bill_id": bill_id, "person_id": person_id, "is_paid": req.is_paid}


@app.post("/bills/{bill_id}/items")
async def add_item(bill_id: str, req: ItemPayload, store: BillStore = Depends(get_bill_store)):
    bill = fetch_bill(store, bill_id)
    item = build_item(req, bill.items)
    if bill.find_item(item.id):
        raise HTTPException(status_code=400, detail=f"Item {item.id} already on bill")
    bill.items.append(item)
    store.save_bill(bill)
    return {"ok": True, "bill_id": bill_id, "item": item_to_dict(item)}


@app.delete("/bills/{bill_id}/items/{item_id}")
async def remove_item(bill_id: str, item_id: str, store: BillStore = Depends(get_bill_store)):
    bill = fetch_bill(store, bill_id)
    if not bill.remove_item(item_id):
        raise HTTPException(status_code=404, detail="Item not found")
    store.save_bill(bill)
    return {"ok": True, "bill_id": bill_id, "item_id": item_id}


def check_share_targets(bill: Bill, item_ids: List[str], person_ids: List[str]) -> None:
    known_items = {i.id for i in bill.items}
    known_people = {p.id for p in bill.people}
    bad_items = sorted({iid for iid in item_ids if iid not in known_items})
    if bad_items:
        raise HTTPException(status_code=400, detail=f"Items do not belong to this bill: {bad_items}")
    bad_people = sorted({pid for pid in person_ids if pid not in known_people})
    if bad_people:
        raise HTTPException(status_code=400, detail=f"People are not on this bill: {bad_people}")


@app.put("/bills/{bill_id}/shares")
async def replace_shares(bill_id: str, req: ReplaceSharesRequest, store: BillStore = Depends(get_bill_store)):
    bill = fetch_bill(store, bill_id)
    check_share_targets(bill, [s.item_id for s in req.shares], [s.person_id for s in req.shares])
    bill.shares = [
        ItemShare(item_id=s.item_id, person_id=s.person_id, weight=Decimal(str(s.weight))) for s in req.shares
    ]
    store.save_bill(bill)
    logger.info("Replaced %d share(s)", len(bill.shares), extra={"bill_id": bill_id})
    return {"ok": True, "bill_id": bill_id, "share_count": len(bill.shares)}


@app.post("/bills/{bill_id}/assign")
async def assign_items(bill_id: str, req: AssignRequest, store: BillStore = Depends(get_bill_store)):
    bill = fetch_bill(store, bill_id)
    check_share_targets(
        bill,
        [iid for claimed in req.assignments.values() for iid in claimed],
        list(req.assignments.keys()),
    )
    bill.shares = build_shares_from_people_items(bill.items, req.assignments)
    store.save_bill(bill)
    return {"ok": True, "bill_id": bill_id, "share_count": len(bill.shares)}


@app.get("/bills/{bill_id}/totals")
async def bill_totals(
    bill_id: str,
    format: Literal["full", "compact"] = Query("full"),
    store: BillStore = Depends(get_bill_store),
):
    bill = fetch_bill(store, bill_id)
    totals = compute_bill_totals(bill)
    if format == "compact":
        data = totals_to_dict(totals, include_items=False)
        return {
            "bill_id": bill.id,
            "title": bill.title,
            "total": data["total"],
            "unallocated": data["unallocated"],
            "people": {p["person_id"]: {"name": p["name"], "total": p["total"]} for p in data["person_totals"]},
        }
    return {"bill_id": bill.id, "title": bill.title, **totals_to_dict(totals)}
