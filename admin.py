import logging
from datetime import timedelta
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from auth import public_user, require_admin
from database import db, require_db, serialize_doc, to_object_id, paginate, utcnow
from payments import attach_products, change_status
from products import substring_filter
from schemas import Role, PaymentStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_db), Depends(require_admin)])

Resource = Literal["product", "user", "payment"]
NEWEST_FIRST = [("created_at", -1), ("_id", -1)]


class AdminUserUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[Role] = None


class PaymentStatusUpdate(BaseModel):
    status: PaymentStatus


class BulkIds(BaseModel):
    ids: List[str] = Field(..., min_length=1)


class BulkStatus(BulkIds):
    is_active: bool


def parse_ids(ids: List[str], label: str) -> List[ObjectId]:
    # Reject the whole request before anything is written
    return [to_object_id(i, label) for i in ids]


# Dashboard
@router.get("/stats")
def admin_stats():
    completed = {"$match": {"status": "completed"}}
    totals = list(db["payment"].aggregate([
        completed,
        {"$group": {"_id": None, "count": {"$sum": 1}, "revenue": {"$sum": "$amount"}}},
    ]))
    top = list(db["payment"].aggregate([
        completed,
        {"$group": {"_id": "$product_id", "sales_count": {"$sum": "$metadata.quantity"}, "revenue": {"$sum": "$amount"}}},
        {"$sort": {"sales_count": -1, "revenue": -1}},
        {"$limit": 5},
    ]))
    ids = [ObjectId(t["_id"]) for t in top if ObjectId.is_valid(t["_id"])]
    titles = {str(p["_id"]): p.get("title") for p in db["product"].find({"_id": {"$in": ids}}, {"title": 1})}
    return {
        "total_users": db["user"].count_documents({}),
        "total_products": db["product"].count_documents({}),
        "total_sales": totals[0]["count"] if totals else 0,
        "total_revenue": round(totals[0]["revenue"], 2) if totals else 0.0,
        "top_selling_products": [
            {
                "product_id": t["_id"],
                "title": titles.get(t["_id"]),
                "sales_count": t["sales_count"],
                "revenue": round(t["revenue"], 2),
            }
            for t in top
        ],
    }


@router.get("/analytics/payments")
def payment_analytics(days: int = Query(30, ge=1, le=365)):
    since = utcnow() - timedelta(days=days)
    rows = db["payment"].aggregate([
        {"$match": {"status": "completed", "created_at": {"$gte": since}}},
        {"$group": {
            "_id": {"$dateToString": {"format": "%Y-%m-%d", "date": "$created_at"}},
            "total_sales": {"$sum": 1},
            "total_revenue": {"$sum": "$amount"},
            "products": {"$addToSet": "$product_id"},
        }},
        {"$sort": {"_id": 1}},
    ])
    return [
        {
            "date": r["_id"],
            "total_sales": r["total_sales"],
            "total_revenue": round(r["total_revenue"], 2),
            "product_count": len(r["products"]),
        }
        for r in rows
    ]


# Products
@router.get("/products")
def admin_products(
    q: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1),
):
    query: Dict[str, Any] = {}
    if q and q.strip():
        query.update(substring_filter(q, ["title", "description"]))
    if is_active is not None:
        query["is_active"] = is_active
    return paginate(db["product"], query, NEWEST_FIRST, page, limit)


# Users
@router.get("/users")
def admin_users(
    q: Optional[str] = None,
    role: Optional[Role] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
):
    query: Dict[str, Any] = {}
    if q and q.strip():
        query.update(substring_filter(q, ["email", "first_name", "last_name"]))
    if role:
        query["role"] = role
    return paginate(db["user"], query, NEWEST_FIRST, page, limit, transform=public_user)


@router.get("/users/{user_id}")
def admin_get_user(user_id: str):
    user = db["user"].find_one({"_id": to_object_id(user_id, "user")})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(user)


@router.patch("/users/{user_id}")
def admin_update_user(user_id: str, data: AdminUserUpdate, current_user: dict = Depends(require_admin)):
    obj_id = to_object_id(user_id, "user")
    update_dict = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    if not update_dict:
        raise HTTPException(status_code=400, detail="No fields to update")
    if user_id == current_user["id"] and update_dict.get("role", "admin") != "admin":
        raise HTTPException(status_code=400, detail="Admins cannot remove their own admin role")
    update_dict["updated_at"] = utcnow()
    res = db["user"].update_one({"_id": obj_id}, {"$set": update_dict})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    if "role" in update_dict:
        logger.info("User %s role set to %s by %s", user_id, update_dict["role"], current_user["email"])
    return public_user(db["user"].find_one({"_id": obj_id}))


@router.delete("/users/{user_id}")
def admin_delete_user(user_id: str, current_user: dict = Depends(require_admin)):
    obj_id = to_object_id(user_id, "user")
    if user_id == current_user["id"]:
        raise HTTPException(status_code=400, detail="Admins cannot delete themselves")
    res = db["user"].delete_one({"_id": obj_id})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    db["cart"].delete_one({"user_id": user_id})
    logger.info("User %s deleted by %s", user_id, current_user["email"])
    return {"ok": True}


# Payments
@router.get("/payments")
def admin_payments(
    status: Optional[PaymentStatus] = None,
    user_id: Optional[str] = None,
    q: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
):
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if user_id:
        query["user_id"] = user_id
    if q and q.strip():
        query.update(substring_filter(q, ["description"]))
    result = paginate(db["payment"], query, NEWEST_FIRST, page, limit)
    attach_products(result["items"])
    return result


@router.patch("/payments/{payment_id}")
def admin_update_payment(payment_id: str, data: PaymentStatusUpdate):
    payment = db["payment"].find_one({"_id": to_object_id(payment_id, "payment")})
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return change_status(payment, data.status)


# Bulk operations
@router.post("/bulk/{resource}/delete")
def bulk_delete(resource: Resource, data: BulkIds, current_user: dict = Depends(require_admin)):
    obj_ids = parse_ids(data.ids, resource)
    if resource == "user":
        # never let an admin delete their own account from a selection
        obj_ids = [i for i in obj_ids if str(i) != current_user["id"]]
    res = db[resource].delete_many({"_id": {"$in": obj_ids}})
    if resource == "user":
        db["cart"].delete_many({"user_id": {"$in": [str(i) for i in obj_ids]}})
    logger.info("Bulk delete of %s %s(s) by %s", res.deleted_count, resource, current_user["email"])
    return {"deleted": res.deleted_count}


@router.post("/bulk/product/status")
def bulk_product_status(data: BulkStatus, current_user: dict = Depends(require_admin)):
    obj_ids = parse_ids(data.ids, "product")
    res = db["product"].update_many(
        {"_id": {"$in": obj_ids}},
        {"$set": {"is_active": data.is_active, "updated_at": utcnow()}},
    )
    logger.info("Bulk status of %s product(s) set to %s by %s", res.matched_count, data.is_active, current_user["email"])
    return {"updated": res.matched_count}


@router.post("/bulk/{resource}/export")
def bulk_export(resource: Resource, data: BulkIds):
    obj_ids = parse_ids(data.ids, resource)
    transform = public_user if resource == "user" else serialize_doc
    items = [transform(d) for d in db[resource].find({"_id": {"$in": obj_ids}}).sort(NEWEST_FIRST)]
    return {"resource": resource, "exported_at": utcnow(), "items": items}
