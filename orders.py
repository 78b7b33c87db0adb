import logging
import re
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pymongo import ReturnDocument
from pymongo.database import Database

import config
from auth import CurrentUser, ensure_admin, ensure_owner_or_admin, ensure_self, get_current_user, require_user
from database import (
    create_document,
    get_db,
    get_documents,
    page_params,
    serialize_doc,
    to_object_id,
    total_pages,
    utcnow,
)
from schemas import ORDER_STATUSES, STATUS_TIME_FIELDS, CamelModel, Order, OrderItem
from spreadsheet import build_workbook, xlsx_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


# --------- Request models ---------

class OrderItemIn(CamelModel):
    product_id: str
    name: Optional[str] = None
    quantity: int
    price: Optional[float] = None
    color: Optional[str] = None
    size: Optional[str] = None
    image: Optional[str] = None


class OrderCreate(CamelModel):
    user_id: Optional[str] = None
    receiver_name: Optional[str] = None
    receiver_phone: Optional[str] = None
    receiver_note: Optional[str] = ""
    products: Optional[List[OrderItemIn]] = None
    total_amount: Optional[float] = None
    shipping_address: Optional[str] = None
    payment_method: Optional[str] = "COD"


class OrderEdit(CamelModel):
    receiver_name: Optional[str] = None
    receiver_phone: Optional[str] = None
    receiver_note: Optional[str] = None
    shipping_address: Optional[str] = None
    status: Optional[str] = None


# --------- Helpers ---------

def _find_order(db: Database, order_id: str) -> dict:
    if not ObjectId.is_valid(order_id):
        raise HTTPException(status_code=404, detail="Order not found")
    order = db["order"].find_one({"_id": ObjectId(order_id)})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def _validate_receiver(payload: OrderCreate):
    if not (payload.receiver_name or "").strip():
        raise HTTPException(status_code=400, detail="Receiver name is required")

    address = (payload.shipping_address or "").strip()
    if not address:
        raise HTTPException(status_code=400, detail="Shipping address is required")
    if len(address) < 10:
        raise HTTPException(status_code=400, detail="Shipping address is too short (min 10 characters)")

    if len(payload.receiver_note or "") > 500:
        raise HTTPException(status_code=400, detail="Receiver note is too long (max 500 characters)")

    phone = payload.receiver_phone or ""
    if len(phone) != config.PHONE_NUMBER_LENGTH:
        raise HTTPException(status_code=400, detail="Invalid phone number length")
    if not re.fullmatch(r"[0-9]+", phone):
        raise HTTPException(status_code=400, detail="Phone number contains digital numbers only")


def _validate_items(db: Database, payload: OrderCreate) -> List[OrderItem]:
    """Check line items against the catalogue and return the price/name snapshots."""
    if not payload.products:
        raise HTTPException(status_code=400, detail="Products array cannot be empty")
    for item in payload.products:
        if item.quantity <= 0:
            raise HTTPException(status_code=400, detail="Product quantity must be positive")

    products: Dict[str, dict] = {}
    for item in payload.products:
        if item.product_id in products:
            continue
        prod = None
        if ObjectId.is_valid(item.product_id):
            prod = db["product"].find_one({"_id": ObjectId(item.product_id)})
        if not prod:
            raise HTTPException(status_code=404, detail="Product not found")
        products[item.product_id] = prod

    requested = defaultdict(int)
    for item in payload.products:
        requested[item.product_id] += item.quantity
    for product_id, quantity in requested.items():
        if products[product_id].get("stock", 0) < quantity:
            raise HTTPException(status_code=400, detail="Not enough stock")

    snapshots = []
    for item in payload.products:
        prod = products[item.product_id]
        images = prod.get("images") or []
        snapshots.append(OrderItem(
            product_id=item.product_id,
            name=prod.get("name") or item.name or "",
            quantity=item.quantity,
            price=prod.get("price", 0),
            color=item.color,
            size=item.size,
            image=item.image or (images[0] if images else None),
        ))

    expected = sum(s.price * s.quantity for s in snapshots)
    if payload.total_amount is None or round(expected, 2) != round(payload.total_amount, 2):
        raise HTTPException(status_code=400, detail="Total amount does not match product prices")
    return snapshots


def _reserve_stock(db: Database, items: List[OrderItem]):
    """Decrement stock per item, never below zero; undo partial work on failure."""
    applied = []
    for item in items:
        res = db["product"].update_one(
            {"_id": ObjectId(item.product_id), "stock": {"$gte": item.quantity}},
            {"$inc": {"stock": -item.quantity}},
        )
        if res.modified_count == 0:
            for done in applied:
                db["product"].update_one({"_id": ObjectId(done.product_id)}, {"$inc": {"stock": done.quantity}})
            logger.warning("Stock for product %s was taken by a concurrent order", item.product_id)
            raise HTTPException(status_code=400, detail="Not enough stock")
        applied.append(item)


def _place_order(db: Database, user: CurrentUser, payload: OrderCreate, items: List[OrderItem], payment_method: str):
    _reserve_stock(db, items)
    order = Order(
        user_id=user.id,
        receiver_name=payload.receiver_name.strip(),
        receiver_phone=payload.receiver_phone,
        receiver_note=payload.receiver_note or "",
        products=items,
        total_amount=payload.total_amount,
        shipping_address=payload.shipping_address.strip(),
        payment_method=payment_method,
    )
    inserted_id = create_document(db, "order", order)
    logger.info("Order %s created by user %s (%s, total %s)", inserted_id, user.id, payment_method, order.total_amount)
    return serialize_doc(db["order"].find_one({"_id": ObjectId(inserted_id)}))


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _sum_amount(db: Database, match: Optional[dict] = None) -> float:
    pipeline = []
    if match:
        pipeline.append({"$match": match})
    pipeline.append({"$group": {"_id": None, "total": {"$sum": "$total_amount"}}})
    rows = list(db["order"].aggregate(pipeline))
    return rows[0]["total"] if rows else 0


def _amount_by_period(db: Database, with_day: bool) -> list:
    key = {"year": {"$year": "$created_at"}, "month": {"$month": "$created_at"}}
    if with_day:
        key["day"] = {"$dayOfMonth": "$created_at"}
    rows = db["order"].aggregate([
        {"$group": {
            "_id": key,
            "total_amount": {"$sum": "$total_amount"},
            "order_count": {"$sum": 1},
        }},
    ])
    result = []
    for row in rows:
        k = row["_id"]
        date = f"{k['year']:04d}-{k['month']:02d}"
        if with_day:
            date += f"-{k['day']:02d}"
        result.append({"date": date, "total_amount": row["total_amount"], "order_count": row["order_count"]})
    result.sort(key=lambda r: r["date"])
    return result


# --------- Customer endpoints ---------

@router.post("")
def create_order(
    payload: OrderCreate,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    user = ensure_self(user, payload.user_id, "You cannot create an order for another user")
    _validate_receiver(payload)
    items = _validate_items(db, payload)
    if payload.payment_method != "COD":
        raise HTTPException(status_code=400, detail="Other function are not supported")
    return _place_order(db, user, payload, items, "COD")


@router.post("/stripe")
def create_gateway_order(
    payload: OrderCreate,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    """Store an order that the external payment gateway confirms later."""
    user = ensure_self(user, payload.user_id, "You cannot create an order for another user")
    if (payload.payment_method or "COD") == "COD":
        raise HTTPException(status_code=404, detail="This method does not need to pay by Stripe")
    _validate_receiver(payload)
    items = _validate_items(db, payload)
    return _place_order(db, user, payload, items, payload.payment_method)


@router.delete("/cancel/{user_id}/{order_id}")
def cancel_order(
    user_id: str,
    order_id: str,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    message = "You are not authorized to cancel this order"
    ensure_self(user, user_id, message)
    order = _find_order(db, order_id)
    if order.get("user_id") != user_id:
        raise HTTPException(status_code=403, detail=message)
    if order.get("status") != "pending":
        raise HTTPException(status_code=400, detail="Order is in processing, can not be cancel!")
    db["order"].delete_one({"_id": order["_id"]})
    logger.info("Order %s cancelled by user %s", order_id, user_id)
    return {"message": "Order canceled successfully"}


@router.get("/user/{user_id}")
def get_user_orders(
    user_id: str,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    ensure_owner_or_admin(user, user_id, "You are not authorized to get this user order", status_code=401)
    page, limit, skip = page_params(page, limit)
    filt = {"user_id": user_id}
    count = db["order"].count_documents(filt)
    if count == 0:
        raise HTTPException(status_code=404, detail="No order found for this user")
    docs = get_documents(db, "order", filt, limit=limit, skip=skip, sort=[("created_at", -1)])
    return {
        "total_orders": count,
        "current_page": page,
        "total_pages": total_pages(count, limit),
        "orders": [serialize_doc(d) for d in docs],
    }


@router.get("/id/{order_id}")
def get_order(
    order_id: str,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    require_user(user)
    order = _find_order(db, order_id)
    ensure_owner_or_admin(user, order.get("user_id"), "You are not authorized to view this order")
    return serialize_doc(order)


@router.put("/payment-check/{order_id}")
def confirm_payment(
    order_id: str,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    require_user(user)
    order = _find_order(db, order_id)
    ensure_owner_or_admin(user, order.get("user_id"), "You are not authorized to update this order")
    doc = db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {"$set": {"payment_check": True, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Payment confirmed for order %s", order_id)
    return serialize_doc(doc)


# --------- Admin endpoints ---------

@router.get("/all")
def list_all_orders(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    ensure_admin(user, "You are not admin to do this action")
    page, limit, skip = page_params(page, limit)
    today = _start_of_day(utcnow())
    count = db["order"].count_documents({})
    docs = get_documents(db, "order", {}, limit=limit, skip=skip, sort=[("created_at", -1)])
    return {
        "number_of_order": count,
        "today_order": db["order"].count_documents({"created_at": {"$gte": today}}),
        "last_week_order": db["order"].count_documents({"created_at": {"$gte": today - timedelta(days=7)}}),
        "last_month_order": db["order"].count_documents({"created_at": {"$gte": today - timedelta(days=30)}}),
        "current_page": page,
        "total_pages": total_pages(count, limit),
        "orders": [serialize_doc(d) for d in docs],
    }


@router.put("/edit/{order_id}")
def edit_order(
    order_id: str,
    payload: OrderEdit,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    ensure_admin(user, "You are not admin to edit this order")
    order = _find_order(db, order_id)
    updates = payload.model_dump(exclude_none=True)
    now = utcnow()

    status = updates.get("status")
    if status is not None:
        if status not in ORDER_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid order status")
        previous = order.get("status", "pending")
        time_field = STATUS_TIME_FIELDS.get(status)
        if time_field and not order.get(time_field):
            updates[time_field] = now
        if previous in ORDER_STATUSES and ORDER_STATUSES.index(status) < ORDER_STATUSES.index(previous):
            logger.warning("Order %s moved backwards from %s to %s", order_id, previous, status)
        elif status != previous:
            logger.info("Order %s moved from %s to %s", order_id, previous, status)

    updates["updated_at"] = now
    doc = db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    return serialize_doc(doc)


@router.get("/per-day")
def amount_per_day(user: Optional[CurrentUser] = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_admin(user, "You are not authorized to get total amount per day")
    return _amount_by_period(db, with_day=True)


@router.get("/per-month")
def amount_per_month(user: Optional[CurrentUser] = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_admin(user, "You are not authorized to get total amount per month")
    return _amount_by_period(db, with_day=False)


@router.get("/status")
def order_status_counts(user: Optional[CurrentUser] = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_admin(user, "You are not authorized to get order status")
    counts = {status: 0 for status in ORDER_STATUSES}
    for row in db["order"].aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
        if row["_id"] in counts:
            counts[row["_id"]] = row["count"]
    return counts


@router.get("/revenue")
def order_revenue(user: Optional[CurrentUser] = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_admin(user, "You are not authorized to get order total revenue")
    month_start = _start_of_day(utcnow()).replace(day=1)
    return {
        "total_revenue": _sum_amount(db),
        "this_month_revenue": _sum_amount(db, {"created_at": {"$gte": month_start}}),
    }


@router.get("/customers")
def orders_by_customer(user: Optional[CurrentUser] = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_admin(user, "You are not authorized to get customer orders")
    rows = db["order"].aggregate([
        {"$group": {
            "_id": "$user_id",
            "order_count": {"$sum": 1},
            "total_spent": {"$sum": "$total_amount"},
            "last_order_at": {"$max": "$created_at"},
        }},
    ])
    customers = [
        {
            "user_id": row["_id"],
            "order_count": row["order_count"],
            "total_spent": row["total_spent"],
            "last_order_at": row["last_order_at"].isoformat() if row.get("last_order_at") else None,
        }
        for row in rows
    ]
    customers.sort(key=lambda c: c["total_spent"], reverse=True)
    return customers


@router.get("/export")
def export_orders(user: Optional[CurrentUser] = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_admin(user, "You are not allowed to export orders")
    columns = [
        ("Order ID", "id", 26),
        ("User ID", "user_id", 26),
        ("Receiver", "receiver_name", 20),
        ("Phone", "receiver_phone", 14),
        ("Shipping Address", "shipping_address", 40),
        ("Products", "products", 50),
        ("Total Amount", "total_amount", 14),
        ("Payment Method", "payment_method", 14),
        ("Paid", "payment_check", 8),
        ("Status", "status", 12),
        ("Created At", "created_at", 20),
    ]
    rows = []
    for doc in get_documents(db, "order", {}, sort=[("created_at", -1)]):
        row = serialize_doc(doc)
        row["products"] = ", ".join(f"{p.get('name')} x{p.get('quantity')}" for p in doc.get("products", []))
        row["payment_check"] = "Yes" if doc.get("payment_check") else "No"
        row["created_at"] = doc["created_at"].strftime("%Y-%m-%d") if doc.get("created_at") else ""
        rows.append(row)
    return xlsx_response(build_workbook("Orders", columns, rows), "orders.xlsx")


@router.get("/search/{search_key}")
def search_orders(
    search_key: str,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    ensure_admin(user, "You are not admin to search orders")
    if ObjectId.is_valid(search_key):
        filt = {"_id": to_object_id(search_key)}
    else:
        pattern = {"$regex": re.escape(search_key), "$options": "i"}
        filt = {"$or": [{"receiver_name": pattern}, {"receiver_phone": pattern}]}
    docs = get_documents(db, "order", filt, sort=[("created_at", -1)])
    if not docs:
        return {"message": "No order founded"}
    return {"orders": [serialize_doc(d) for d in docs]}
