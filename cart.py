from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from auth import get_current_user
from database import db, require_db, serialize_doc, utcnow
from products import get_active_product
from schemas import CartLine

router = APIRouter(prefix="/cart", tags=["cart"], dependencies=[Depends(require_db)])


class UpdateCartItem(BaseModel):
    product_id: str
    size: Optional[str] = None
    quantity: int


def load_items(user_id: str) -> List[Dict[str, Any]]:
    cart = db["cart"].find_one({"user_id": user_id})
    return cart.get("items", []) if cart else []


def save_items(user_id: str, items: List[Dict[str, Any]]):
    db["cart"].update_one(
        {"user_id": user_id},
        {"$set": {"items": items, "updated_at": utcnow()}},
        upsert=True,
    )


def clear_cart(user_id: str):
    save_items(user_id, [])


def same_line(it: Dict[str, Any], product_id: str, size: Optional[str]) -> bool:
    return it["product_id"] == product_id and it.get("size") == size


def cart_view(user_id: str) -> Dict[str, Any]:
    """Cart lines with their current product and totals from catalog prices."""
    items = load_items(user_id)
    ids = [ObjectId(it["product_id"]) for it in items if ObjectId.is_valid(it["product_id"])]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}, "is_active": True})}
    lines = []
    subtotal = 0.0
    count = 0
    for it in items:
        prod = products.get(it["product_id"])
        line = {**it, "product": serialize_doc(prod) if prod else None, "line_total": 0.0}
        if prod:
            line["line_total"] = round(prod["price"] * it["quantity"], 2)
            subtotal += line["line_total"]
            count += it["quantity"]
        lines.append(line)
    return {"user_id": user_id, "items": lines, "subtotal": round(subtotal, 2), "item_count": count}


@router.get("")
def get_cart(current_user: dict = Depends(get_current_user)):
    return cart_view(current_user["id"])


@router.post("")
def add_to_cart(item: CartLine, current_user: dict = Depends(get_current_user)):
    prod = get_active_product(item.product_id)
    if item.size is not None and item.size not in prod.get("size", []):
        raise HTTPException(status_code=400, detail="Size not available")
    items = load_items(current_user["id"])
    # merge if same product and size
    for it in items:
        if same_line(it, item.product_id, item.size):
            it["quantity"] = int(it.get("quantity", 1)) + item.quantity
            break
    else:
        items.append(item.model_dump())
    save_items(current_user["id"], items)
    return cart_view(current_user["id"])


@router.patch("")
def update_cart(item: UpdateCartItem, current_user: dict = Depends(get_current_user)):
    items = load_items(current_user["id"])
    if not any(same_line(it, item.product_id, item.size) for it in items):
        raise HTTPException(status_code=404, detail="Item not in cart")
    new_items = []
    for it in items:
        if same_line(it, item.product_id, item.size):
            if item.quantity <= 0:
                continue
            it["quantity"] = item.quantity
        new_items.append(it)
    save_items(current_user["id"], new_items)
    return cart_view(current_user["id"])


@router.delete("/{product_id}")
def remove_from_cart(product_id: str, size: Optional[str] = None, current_user: dict = Depends(get_current_user)):
    items = load_items(current_user["id"])
    remaining = [it for it in items if not same_line(it, product_id, size)]
    if len(remaining) == len(items):
        raise HTTPException(status_code=404, detail="Item not in cart")
    save_items(current_user["id"], remaining)
    return cart_view(current_user["id"])


@router.delete("")
def empty_cart(current_user: dict = Depends(get_current_user)):
    clear_cart(current_user["id"])
    return {"ok": True}
