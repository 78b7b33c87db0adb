import re
from typing import List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from pymongo.database import Database

from auth import CurrentUser, ensure_admin, get_current_user
from database import create_document, get_db, get_documents, serialize_doc, to_object_id, utcnow
from schemas import CamelModel, Product as ProductSchema

router = APIRouter(prefix="/products", tags=["products"])

ADMIN_ONLY = "You are not admin to manage products"


class ProductUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    images: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)


@router.get("")
def list_products(
    q: Optional[str] = Query(None, description="search query"),
    category: Optional[str] = None,
    in_stock: Optional[bool] = Query(None, alias="inStock"),
    db: Database = Depends(get_db),
):
    filt = {}
    if q:
        pattern = {"$regex": re.escape(q), "$options": "i"}
        filt["$or"] = [
            {"name": pattern},
            {"description": pattern},
            {"category": pattern},
        ]
    if category:
        filt["category"] = category
    if in_stock is not None:
        filt["stock"] = {"$gt": 0} if in_stock else 0
    docs = get_documents(db, "product", filt)
    return [serialize_doc(d) for d in docs]


@router.get("/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    doc = db["product"].find_one({"_id": to_object_id(product_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize_doc(doc)


@router.post("")
def create_product(
    payload: ProductSchema,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    ensure_admin(user, ADMIN_ONLY)
    inserted_id = create_document(db, "product", payload)
    doc = db["product"].find_one({"_id": ObjectId(inserted_id)})
    return serialize_doc(doc)


@router.patch("/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    ensure_admin(user, ADMIN_ONLY)
    updates = payload.model_dump(exclude_none=True)
    if not updates:
        return {"updated": False}
    updates["updated_at"] = utcnow()
    res = db["product"].update_one({"_id": to_object_id(product_id)}, {"$set": updates})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    doc = db["product"].find_one({"_id": to_object_id(product_id)})
    return serialize_doc(doc)


@router.delete("/{product_id}")
def delete_product(
    product_id: str,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    ensure_admin(user, ADMIN_ONLY)
    res = db["product"].delete_one({"_id": to_object_id(product_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"deleted": True}
