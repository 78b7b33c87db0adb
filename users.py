import logging
import re
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import EmailStr, Field
from pymongo import ReturnDocument
from pymongo.database import Database
from werkzeug.security import generate_password_hash

from auth import CurrentUser, ensure_admin, ensure_self, get_current_user, require_user
from database import get_db, get_documents, page_params, serialize_doc, to_object_id, total_pages, utcnow
from schemas import CamelModel
from spreadsheet import build_workbook, xlsx_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])

# fields hidden from other users in chat pickers
CHAT_PROJECTION = {"password": 0, "address_list": 0, "phone_number": 0, "gender": 0, "date_of_birth": 0}


class UserUpdate(CamelModel):
    username: Optional[str] = Field(None, min_length=1, max_length=50)
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    gender: Optional[str] = None
    phone_number: Optional[str] = None
    date_of_birth: Optional[date] = None
    address_list: Optional[List[str]] = None
    profile_pic: Optional[str] = None


def _not_self(user: CurrentUser) -> dict:
    if ObjectId.is_valid(user.id):
        return {"_id": {"$ne": ObjectId(user.id)}}
    return {}


def _contains(text: str) -> dict:
    return {"$regex": re.escape(text), "$options": "i"}


@router.get("")
def list_users(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    ensure_admin(user, "You dont have permission to do this action")
    page, limit, skip = page_params(page, limit)
    count = db["user"].count_documents({})
    if count == 0:
        raise HTTPException(status_code=404, detail="No users were found")
    now = utcnow()
    docs = get_documents(db, "user", {}, limit=limit, skip=skip, sort=[("created_at", -1)])
    return {
        "user_count": count,
        "last_week_users_count": db["user"].count_documents({"created_at": {"$gte": now - timedelta(days=7)}}),
        "last_month_users_count": db["user"].count_documents({"created_at": {"$gte": now - timedelta(days=30)}}),
        "current_page": page,
        "total_pages": total_pages(count, limit),
        "users": [serialize_doc(d) for d in docs],
    }


@router.get("/export")
def export_users(user: Optional[CurrentUser] = Depends(get_current_user), db: Database = Depends(get_db)):
    ensure_admin(user, "You are not allowed to export users")
    columns = [
        ("User ID", "id", 24),
        ("Username", "username", 20),
        ("Email", "email", 30),
        ("Phone Number", "phone_number", 15),
        ("Gender", "gender", 10),
        ("Date of Birth", "date_of_birth", 15),
        ("Addresses", "address_list", 40),
        ("Is Admin", "is_admin", 10),
        ("Created At", "created_at", 20),
        ("Updated At", "updated_at", 20),
    ]
    rows = []
    for doc in get_documents(db, "user", {}):
        rows.append({
            "id": str(doc["_id"]),
            "username": doc.get("username", ""),
            "email": doc.get("email", ""),
            "phone_number": doc.get("phone_number") or "",
            "gender": doc.get("gender") or "",
            "date_of_birth": doc["date_of_birth"].strftime("%Y-%m-%d") if doc.get("date_of_birth") else "",
            "address_list": ", ".join(doc.get("address_list") or []),
            "is_admin": "Yes" if doc.get("is_admin") else "No",
            "created_at": doc["created_at"].strftime("%Y-%m-%d") if doc.get("created_at") else "",
            "updated_at": doc["updated_at"].strftime("%Y-%m-%d") if doc.get("updated_at") else "",
        })
    logger.info("Exporting %d users", len(rows))
    return xlsx_response(build_workbook("Users", columns, rows), "users.xlsx")


@router.get("/search")
def search_users(
    search: Optional[str] = None,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    user = require_user(user)
    filt = _not_self(user)
    if search:
        filt["$or"] = [{"username": _contains(search)}, {"email": _contains(search)}]
    docs = get_documents(db, "user", filt)
    if not docs:
        return {"message": "User not found"}
    return [serialize_doc(d) for d in docs]


@router.get("/search-admin/{search_key}")
def search_users_admin(
    search_key: str,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    ensure_admin(user, "You are not allowed to search users")
    if ObjectId.is_valid(search_key):
        filt = {"_id": ObjectId(search_key)}
    else:
        filt = {"username": _contains(search_key)}
    docs = get_documents(db, "user", filt)
    if not docs:
        return {"message": "User not found"}
    return [serialize_doc(d) for d in docs]


@router.get("/chat-recipients")
def chat_recipients(user: Optional[CurrentUser] = Depends(get_current_user), db: Database = Depends(get_db)):
    user = require_user(user)
    docs = get_documents(db, "user", _not_self(user), projection=CHAT_PROJECTION)
    if not docs:
        raise HTTPException(status_code=404, detail="No users were found")
    return [serialize_doc(d) for d in docs]


@router.get("/group-chat-candidates/{chat_id}")
def group_chat_candidates(
    chat_id: str,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    require_user(user)
    chat = db["chat"].find_one({"_id": to_object_id(chat_id)})
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    member_ids = [ObjectId(m) for m in chat.get("members", []) if ObjectId.is_valid(m)]
    docs = get_documents(db, "user", {"_id": {"$nin": member_ids}}, projection=CHAT_PROJECTION)
    if not docs:
        return {"message": "No users to add in this chat"}
    return [serialize_doc(d) for d in docs]


@router.get("/{user_id}")
def get_user(user_id: str, db: Database = Depends(get_db)):
    doc = db["user"].find_one({"_id": to_object_id(user_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="User not found")
    return serialize_doc(doc)


@router.put("/{user_id}")
def update_user(
    user_id: str,
    payload: UserUpdate,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    ensure_self(user, user_id, "You don't have permission to do this action", status_code=401)
    updates = payload.model_dump(exclude_none=True)
    if "password" in updates:
        if len(updates["password"]) < 6:
            raise HTTPException(status_code=400, detail="Password must be at least 6 characters long")
        updates["password"] = generate_password_hash(updates["password"])
    if "email" in updates:
        updates["email"] = str(updates["email"])
    if "date_of_birth" in updates:
        updates["date_of_birth"] = datetime.combine(updates["date_of_birth"], time.min)
    updates["updated_at"] = utcnow()

    doc = db["user"].find_one_and_update(
        {"_id": to_object_id(user_id)},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("User %s updated fields %s", user_id, sorted(k for k in updates if k != "updated_at"))
    return serialize_doc(doc)


@router.delete("/{user_id}")
def delete_user(
    user_id: str,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    ensure_self(user, user_id, "You dont have permission to do this action", status_code=401)
    db["user"].delete_one({"_id": to_object_id(user_id)})
    logger.info("User %s deleted their account", user_id)
    return {"message": "User deleted successfully"}
