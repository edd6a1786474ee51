import logging
import os
import re
from typing import Any, Dict, List, Literal, Optional, Tuple
from uuid import uuid4

import gridfs
from gridfs.errors import NoFile
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile
from pydantic import BaseModel, Field

from auth import get_optional_user, is_admin, require_admin
from database import db, require_db, serialize_doc, to_object_id, create_document, paginate, utcnow
from schemas import Product as ProductSchema

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/products", tags=["products"], dependencies=[Depends(require_db)])

SORTS = {
    "newest": [("created_at", -1), ("_id", -1)],
    "oldest": [("created_at", 1), ("_id", 1)],
    "price_low": [("price", 1), ("_id", 1)],
    "price_high": [("price", -1), ("_id", 1)],
    "name": [("title", 1), ("_id", 1)],
}

SortOption = Literal["newest", "oldest", "price_low", "price_high", "name"]


def substring_filter(q: str, fields: List[str]) -> Dict[str, Any]:
    """Case-insensitive "contains" match of ``q`` against any of ``fields``."""
    pattern = re.escape(q.strip())
    return {"$or": [{f: {"$regex": pattern, "$options": "i"}} for f in fields]}


def get_active_product(product_id: str) -> Dict[str, Any]:
    product = db["product"].find_one({"_id": to_object_id(product_id, "product"), "is_active": True})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


class ProductIn(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., gt=0)
    category: str
    brand: str
    size: List[str] = []
    color: List[str] = []
    images: List[str] = []
    stock: int = Field(0, ge=0)
    is_active: bool = True
    tags: List[str] = []


class ProductUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    category: Optional[str] = None
    brand: Optional[str] = None
    size: Optional[List[str]] = None
    color: Optional[List[str]] = None
    images: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    tags: Optional[List[str]] = None


@router.get("")
def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    brand: Optional[str] = None,
    size: Optional[str] = None,
    color: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    in_stock: Optional[bool] = None,
    sort: SortOption = "newest",
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1),
):
    query: Dict[str, Any] = {"is_active": True}
    if q and q.strip():
        query.update(substring_filter(q, ["title", "description", "brand", "tags"]))
    if category:
        query["category"] = category
    if brand:
        query["brand"] = brand
    if size:
        query["size"] = size
    if color:
        query["color"] = color
    price_filter: Dict[str, Any] = {}
    if min_price is not None:
        price_filter["$gte"] = float(min_price)
    if max_price is not None:
        price_filter["$lte"] = float(max_price)
    if price_filter:
        query["price"] = price_filter
    if in_stock is True:
        query["stock"] = {"$gt": 0}
    elif in_stock is False:
        query["stock"] = {"$lte": 0}

    return paginate(db["product"], query, SORTS[sort], page, limit)


@router.get("/facets")
def product_facets():
    active = {"is_active": True}
    bounds = list(db["product"].aggregate([
        {"$match": active},
        {"$group": {"_id": None, "min_price": {"$min": "$price"}, "max_price": {"$max": "$price"}}},
    ]))
    return {
        "categories": sorted(db["product"].distinct("category", active)),
        "brands": sorted(db["product"].distinct("brand", active)),
        "min_price": bounds[0]["min_price"] if bounds else None,
        "max_price": bounds[0]["max_price"] if bounds else None,
    }


@router.get("/{product_id}")
def get_product(product_id: str, current_user: Optional[dict] = Depends(get_optional_user)):
    product = db["product"].find_one({"_id": to_object_id(product_id, "product")})
    if not product or (not product.get("is_active") and not is_admin(current_user)):
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize_doc(product)


@router.post("", status_code=201)
def create_product(data: ProductIn, current_user: dict = Depends(require_admin)):
    product = ProductSchema(**data.model_dump(), user_id=current_user["id"])
    product.price = round(product.price, 2)
    created = create_document(db["product"], product.model_dump())
    logger.info("Product %s created by %s", created["id"], current_user["email"])
    return created


@router.put("/{product_id}")
def update_product(product_id: str, data: ProductUpdate, current_user: dict = Depends(require_admin)):
    obj_id = to_object_id(product_id, "product")
    update_dict = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    if not update_dict:
        raise HTTPException(status_code=400, detail="No fields to update")
    if "price" in update_dict:
        update_dict["price"] = round(update_dict["price"], 2)
    update_dict["updated_at"] = utcnow()
    res = db["product"].update_one({"_id": obj_id}, {"$set": update_dict})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    logger.info("Product %s updated by %s", product_id, current_user["email"])
    return serialize_doc(db["product"].find_one({"_id": obj_id}))


@router.delete("/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(require_admin)):
    obj_id = to_object_id(product_id, "product")
    res = db["product"].delete_one({"_id": obj_id})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    logger.info("Product %s deleted by %s", product_id, current_user["email"])
    return {"ok": True}


# Images
IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}
MAX_IMAGE_BYTES = int(os.getenv("MAX_UPLOAD_SIZE_MB", "5")) * 1024 * 1024


def image_store() -> gridfs.GridFS:
    return gridfs.GridFS(db, collection="product_images")


def read_image(upload: UploadFile) -> Tuple[str, str, bytes]:
    """Validate one uploaded file and return its stored name, content type and bytes."""
    extension = os.path.splitext(upload.filename or "")[1].lower().lstrip(".")
    content_type = upload.content_type or ""
    if extension not in IMAGE_EXTENSIONS or not content_type.startswith("image/"):
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported image {upload.filename!r}. Upload PNG, JPG, JPEG, GIF, or WEBP files.",
        )
    data = upload.file.read()
    if not data:
        raise HTTPException(status_code=400, detail=f"Image {upload.filename!r} is empty")
    if len(data) > MAX_IMAGE_BYTES:
        raise HTTPException(status_code=413, detail=f"Image {upload.filename!r} is too large")
    return f"{uuid4().hex}.{extension}", content_type, data


@router.post("/images", status_code=201)
def upload_images(
    request: Request,
    files: List[UploadFile] = File(...),
    product_id: Optional[str] = Form(None),
    current_user: dict = Depends(require_admin),
):
    obj_id = to_object_id(product_id, "product") if product_id else None
    if obj_id and not db["product"].count_documents({"_id": obj_id}):
        raise HTTPException(status_code=404, detail="Product not found")
    # Check every file before storing any of them
    images = [read_image(f) for f in files]

    store = image_store()
    urls = []
    for filename, content_type, data in images:
        file_id = store.put(data, filename=filename, metadata={
            "content_type": content_type,
            "uploaded_by": current_user["id"],
        })
        urls.append(str(request.url_for("get_image", image_id=str(file_id))))

    if obj_id:
        db["product"].update_one(
            {"_id": obj_id},
            {"$push": {"images": {"$each": urls}}, "$set": {"updated_at": utcnow()}},
        )
    logger.info("%s image(s) uploaded by %s", len(urls), current_user["email"])
    return {"urls": urls}


@router.get("/images/{image_id}", name="get_image")
def get_image(image_id: str):
    try:
        image = image_store().get(to_object_id(image_id, "image"))
    except NoFile:
        raise HTTPException(status_code=404, detail="Image not found")
    content_type = (image.metadata or {}).get("content_type", "application/octet-stream")
    return Response(
        content=image.read(),
        media_type=content_type,
        headers={"Cache-Control": "public, max-age=86400"},
    )
