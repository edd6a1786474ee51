import logging
import os
from collections import Counter
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

import stripe
from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from auth import get_current_user, is_admin
from cart import load_items, clear_cart
from database import db, require_db, serialize_doc, to_object_id, paginate, utcnow
from products import substring_filter
from schemas import Payment as PaymentSchema, PaymentMethod, PAYMENT_TRANSITIONS, INTENT_TRANSITIONS

logger = logging.getLogger(__name__)

# Stripe Config
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "php").lower()
ALLOW_DIRECT_CHECKOUT = os.getenv("ALLOW_DIRECT_CHECKOUT", "true").lower() in ("1", "true", "yes")

if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY
else:
    logger.warning("STRIPE_SECRET_KEY is not set, card payments are disabled")

# Stripe PaymentIntent status -> payment row status
INTENT_STATUSES = {
    "succeeded": "completed",
    "canceled": "cancelled",
}

StatusFilter = Literal["all", "pending", "completed", "failed", "cancelled", "refunded"]

router = APIRouter(prefix="/payments", tags=["payments"], dependencies=[Depends(require_db)])
checkout_router = APIRouter(tags=["checkout"], dependencies=[Depends(require_db)])
profile_router = APIRouter(prefix="/profile", tags=["profile"], dependencies=[Depends(require_db)])


# Stripe helpers

def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def create_intent(amount: float, metadata: Dict[str, str]):
    if not STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Card payments are not configured")
    try:
        return stripe.PaymentIntent.create(
            amount=to_minor_units(amount),
            currency=PAYMENT_CURRENCY,
            metadata=metadata,
        )
    except stripe.StripeError as e:
        logger.error("Error creating payment intent: %s", e)
        raise HTTPException(status_code=502, detail="Failed to create payment intent")


def intent_row_status(intent) -> Optional[str]:
    """Payment row status for a retrieved intent, or None to leave rows as they are.

    New intents sit at ``requires_payment_method`` until a card is attached,
    so that state only means failure once a charge attempt was declined.
    """
    if intent.status == "requires_payment_method":
        return "failed" if getattr(intent, "last_payment_error", None) else None
    return INTENT_STATUSES.get(intent.status)


def retrieve_intent(payment_intent_id: str):
    if not STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Card payments are not configured")
    try:
        return stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as e:
        logger.error("Error retrieving payment intent %s: %s", payment_intent_id, e)
        raise HTTPException(status_code=502, detail="Failed to retrieve payment intent")


# Payment row helpers

def payment_row(user_id: str, product: Dict[str, Any], quantity: int, size: Optional[str], method: str, status: str,
                intent_id: Optional[str] = None, checkout_id: Optional[str] = None) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {"quantity": quantity, "size": size}
    if checkout_id:
        metadata["checkout_id"] = checkout_id
    payment = PaymentSchema(
        user_id=user_id,
        product_id=str(product["_id"]),
        amount=round(product["price"] * quantity, 2),
        currency=PAYMENT_CURRENCY,
        status=status,
        stripe_payment_intent_id=intent_id,
        payment_method=method,
        description=f"Payment for {product['title']}",
        metadata=metadata,
    )
    now = utcnow()
    return {**payment.model_dump(), "created_at": now, "updated_at": now}


def attach_products(payments: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = [ObjectId(p["product_id"]) for p in payments if ObjectId.is_valid(p.get("product_id", ""))]
    products = {str(d["_id"]): d for d in db["product"].find({"_id": {"$in": ids}}, {"title": 1, "description": 1})}
    for p in payments:
        prod = products.get(p.get("product_id"))
        p["product"] = {"title": prod.get("title"), "description": prod.get("description")} if prod else None
    return payments


def decrement_stock(rows: List[Dict[str, Any]]):
    for row in rows:
        quantity = int(row.get("metadata", {}).get("quantity", 1))
        res = db["product"].update_one(
            {"_id": ObjectId(row["product_id"]), "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
        )
        if res.matched_count == 0:
            logger.warning("Could not take %s of product %s from stock", quantity, row["product_id"])


def on_completed(rows: List[Dict[str, Any]]):
    decrement_stock(rows)
    for user_id in {r["user_id"] for r in rows if r.get("metadata", {}).get("checkout_id")}:
        clear_cart(user_id)


def check_transition(current: str, new: str):
    if new not in PAYMENT_TRANSITIONS.get(current, set()):
        raise HTTPException(status_code=409, detail=f"Cannot change payment from {current} to {new}")


def change_status(payment: Dict[str, Any], new_status: str) -> Dict[str, Any]:
    """Move one stored payment document to ``new_status``."""
    check_transition(payment["status"], new_status)
    db["payment"].update_one({"_id": payment["_id"]}, {"$set": {"status": new_status, "updated_at": utcnow()}})
    logger.info("Payment %s: %s -> %s", payment["_id"], payment["status"], new_status)
    if new_status == "completed":
        on_completed([payment])
    return serialize_doc(db["payment"].find_one({"_id": payment["_id"]}))


def apply_intent_status(payment_intent_id: str, new_status: str, user_id: Optional[str] = None, charge_id: Optional[str] = None) -> int:
    """Move every payment row recorded against an intent to ``new_status``.

    Only rows whose current status allows the transition are touched.
    Returns the number of rows changed.
    """
    sources = [s for s, targets in INTENT_TRANSITIONS.items() if new_status in targets]
    query: Dict[str, Any] = {"stripe_payment_intent_id": payment_intent_id, "status": {"$in": sources}}
    if user_id:
        query["user_id"] = user_id
    rows = list(db["payment"].find(query))
    if not rows:
        return 0
    update: Dict[str, Any] = {"status": new_status, "updated_at": utcnow()}
    if charge_id:
        update["stripe_charge_id"] = charge_id
    db["payment"].update_many({"_id": {"$in": [r["_id"] for r in rows]}}, {"$set": update})
    logger.info("Intent %s: %s payment(s) -> %s", payment_intent_id, len(rows), new_status)
    if new_status == "completed":
        on_completed(rows)
    return len(rows)


# Models
class CheckoutInput(BaseModel):
    payment_method: PaymentMethod = "card"


class IntentInput(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None


class ConfirmInput(BaseModel):
    payment_intent_id: str = Field(..., min_length=1)


# Checkout
@checkout_router.post("/checkout")
def checkout(data: CheckoutInput, current_user: dict = Depends(get_current_user)):
    user_id = current_user["id"]
    items = load_items(user_id)
    if not items:
        raise HTTPException(status_code=400, detail="Cart is empty")
    if data.payment_method == "direct" and not ALLOW_DIRECT_CHECKOUT:
        raise HTTPException(status_code=400, detail="Direct checkout is disabled")

    # Prices and availability come from the catalog, never from the client
    ids = [ObjectId(it["product_id"]) for it in items if ObjectId.is_valid(it["product_id"])]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}, "is_active": True})}
    wanted: Counter = Counter()
    for it in items:
        if it["product_id"] not in products:
            raise HTTPException(status_code=400, detail=f"Product {it['product_id']} is no longer available")
        wanted[it["product_id"]] += it["quantity"]
    for product_id, quantity in wanted.items():
        prod = products[product_id]
        if prod.get("stock", 0) < quantity:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {prod['title']}")

    checkout_id = uuid4().hex
    total = round(sum(products[it["product_id"]]["price"] * it["quantity"] for it in items), 2)
    intent_id = client_secret = None
    if data.payment_method == "card":
        intent = create_intent(total, {"checkout_id": checkout_id, "user_id": user_id})
        intent_id, client_secret = intent.id, intent.client_secret
        status = "pending"
    else:
        status = "completed"

    rows = [
        payment_row(user_id, products[it["product_id"]], it["quantity"], it.get("size"), data.payment_method, status,
                    intent_id=intent_id, checkout_id=checkout_id)
        for it in items
    ]
    result = db["payment"].insert_many(rows)
    for row, _id in zip(rows, result.inserted_ids):
        row["_id"] = _id
    if status == "completed":
        on_completed(rows)
    logger.info("Checkout %s by %s: %s line(s), total %s %s", checkout_id, current_user["email"], len(rows), total, data.payment_method)

    response = {
        "checkout_id": checkout_id,
        "status": status,
        "total": total,
        "currency": PAYMENT_CURRENCY,
        "payments": [serialize_doc(r) for r in rows],
    }
    if client_secret:
        response["client_secret"] = client_secret
    return response


# Payments
@router.post("/intent")
def create_payment_intent(data: IntentInput, current_user: dict = Depends(get_current_user)):
    product = db["product"].find_one({"_id": to_object_id(data.product_id, "product"), "is_active": True})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    if product.get("stock", 0) < data.quantity:
        raise HTTPException(status_code=400, detail=f"Insufficient stock for {product['title']}")
    amount = round(product["price"] * data.quantity, 2)
    intent = create_intent(amount, {"product_id": data.product_id, "user_id": current_user["id"]})
    row = payment_row(current_user["id"], product, data.quantity, data.size, "card", "pending", intent_id=intent.id)
    row["_id"] = db["payment"].insert_one(row).inserted_id
    return {"client_secret": intent.client_secret, "payment": serialize_doc(row)}


@router.post("/confirm")
def confirm_payment(data: ConfirmInput, current_user: dict = Depends(get_current_user)):
    query = {"stripe_payment_intent_id": data.payment_intent_id, "user_id": current_user["id"]}
    if not db["payment"].find_one(query):
        raise HTTPException(status_code=404, detail="Payment not found")
    intent = retrieve_intent(data.payment_intent_id)
    new_status = intent_row_status(intent)
    changed = 0
    if new_status:
        changed = apply_intent_status(
            data.payment_intent_id, new_status, user_id=current_user["id"],
            charge_id=getattr(intent, "latest_charge", None),
        )
    payments = [serialize_doc(p) for p in db["payment"].find(query)]
    return {"intent_status": intent.status, "updated": changed, "payments": attach_products(payments)}


@router.post("/webhook")
async def stripe_webhook(request: Request):
    if not STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="Webhook is not configured")
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    try:
        event = stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Rejected webhook: %s", e)
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    obj = event.data.object
    changed = 0
    if event.type == "payment_intent.succeeded":
        changed = apply_intent_status(obj.id, "completed", charge_id=getattr(obj, "latest_charge", None))
    elif event.type == "payment_intent.payment_failed":
        changed = apply_intent_status(obj.id, "failed")
    elif event.type == "payment_intent.canceled":
        changed = apply_intent_status(obj.id, "cancelled")
    elif event.type == "charge.refunded":
        intent_id = getattr(obj, "payment_intent", None)
        if intent_id:
            changed = apply_intent_status(intent_id, "refunded", charge_id=obj.id)
    else:
        logger.info("Ignoring webhook event %s", event.type)
    return {"received": True, "updated": changed}


@router.get("")
def list_payments(
    status: StatusFilter = "all",
    q: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    current_user: dict = Depends(get_current_user),
):
    query: Dict[str, Any] = {"user_id": current_user["id"]}
    if status != "all":
        query["status"] = status
    if q and q.strip():
        query.update(substring_filter(q, ["description"]))
    result = paginate(db["payment"], query, [("created_at", -1), ("_id", -1)], page, limit)
    attach_products(result["items"])

    totals = list(db["payment"].aggregate([
        {"$match": {"user_id": current_user["id"], "status": "completed"}},
        {"$group": {"_id": None, "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
    ]))
    result["summary"] = {
        "total_spent": round(totals[0]["total"], 2) if totals else 0.0,
        "completed_count": totals[0]["count"] if totals else 0,
    }
    return result


@router.get("/{payment_id}")
def get_payment(payment_id: str, current_user: dict = Depends(get_current_user)):
    payment = db["payment"].find_one({"_id": to_object_id(payment_id, "payment")})
    if not payment or (payment["user_id"] != current_user["id"] and not is_admin(current_user)):
        raise HTTPException(status_code=404, detail="Payment not found")
    return attach_products([serialize_doc(payment)])[0]


# Profile
@profile_router.get("/stats")
def profile_stats(current_user: dict = Depends(get_current_user)):
    completed = list(db["payment"].find({"user_id": current_user["id"], "status": "completed"}).sort([("created_at", -1), ("_id", -1)]))
    ids = [ObjectId(p["product_id"]) for p in completed if ObjectId.is_valid(p["product_id"])]
    brands = {str(d["_id"]): d.get("brand") for d in db["product"].find({"_id": {"$in": ids}}, {"brand": 1})}
    brand_counts = Counter(brands[p["product_id"]] for p in completed if brands.get(p["product_id"]))
    return {
        "total_purchases": len(completed),
        "total_spent": round(sum(p["amount"] for p in completed), 2),
        "favorite_brands": [brand for brand, _ in brand_counts.most_common(3)],
        "recent_purchases": attach_products([serialize_doc(p) for p in completed[:5]]),
    }
