import logging
from typing import List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pymongo.database import Database

from auth import CurrentUser, get_current_user, require_user
from database import create_document, get_db, get_documents, serialize_doc
from schemas import CamelModel, Chat

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chats", tags=["chats"])


class ChatCreate(CamelModel):
    members: List[str]
    chat_name: Optional[str] = None


@router.post("")
def create_chat(
    payload: ChatCreate,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    user = require_user(user)
    members = [user.id] + [m for m in dict.fromkeys(payload.members) if m != user.id]
    if len(members) < 2:
        raise HTTPException(status_code=400, detail="A chat needs at least one other member")
    is_group = len(members) > 2
    if is_group and not (payload.chat_name or "").strip():
        raise HTTPException(status_code=400, detail="Group chat name is required")
    chat = Chat(chat_name=payload.chat_name, is_group_chat=is_group, members=members, created_by=user.id)
    inserted_id = create_document(db, "chat", chat)
    logger.info("User %s created chat %s with %d members", user.id, inserted_id, len(members))
    return serialize_doc(db["chat"].find_one({"_id": ObjectId(inserted_id)}))


@router.get("")
def list_my_chats(user: Optional[CurrentUser] = Depends(get_current_user), db: Database = Depends(get_db)):
    user = require_user(user)
    docs = get_documents(db, "chat", {"members": user.id}, sort=[("updated_at", -1)])
    return [serialize_doc(d) for d in docs]
