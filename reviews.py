import logging
import math
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo import ReturnDocument
from pymongo.database import Database

import config
from auth import CurrentUser, ensure_admin, ensure_owner_or_admin, ensure_self, get_current_user
from database import create_document, get_db, get_documents, page_params, serialize_doc, total_pages, utcnow
from schemas import (
    ALLOWED_IMAGE_EXTENSIONS,
    MAX_COMMENT_LENGTH,
    MAX_IMAGE_BYTES,
    MAX_IMAGES,
    MAX_REPLY_LENGTH,
    CamelModel,
    Review,
    ReviewReply,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reviews", tags=["reviews"])

SORT_OPTIONS = {
    "newest": [("created_at", -1)],
    "oldest": [("created_at", 1)],
    "highest": [("rating", -1), ("created_at", -1)],
    "lowest": [("rating", 1), ("created_at", -1)],
}


class ReviewCreate(CamelModel):
    product_ids: Optional[List[str]] = None
    order: Optional[str] = None
    rating: Optional[float] = None
    comment: Optional[str] = ""
    image: Optional[Union[str, List[str]]] = None


class ReviewEdit(CamelModel):
    rating: Optional[float] = None
    comment: Optional[str] = None
    image: Optional[Union[str, List[str]]] = None


class ReplyIn(CamelModel):
    text: Optional[str] = None


# --------- Validation ---------

def _check_rating(rating) -> int:
    if rating is None:
        raise HTTPException(status_code=400, detail="Rating is required")
    if not math.isfinite(rating) or rating != int(rating) or not 1 <= rating <= 5:
        raise HTTPException(status_code=400, detail="Rating must be between 1 and 5")
    return int(rating)


def _check_comment(comment: Optional[str]) -> str:
    comment = comment or ""
    if len(comment) > MAX_COMMENT_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Comment exceeds maximum length of {MAX_COMMENT_LENGTH} characters",
        )
    return comment


def _decoded_size(b64: str) -> int:
    padding = len(b64) - len(b64.rstrip("="))
    return len(b64) * 3 // 4 - padding


def _check_images(image) -> List[str]:
    """Accept a file name/URL or a base64 data URI, singly or as a list."""
    if image is None:
        return []
    images = [image] if isinstance(image, str) else list(image)
    images = [img for img in images if img]
    if len(images) > MAX_IMAGES:
        raise HTTPException(status_code=400, detail=f"You can upload at most {MAX_IMAGES} images")
    allowed_types = {f"data:image/{ext};base64" for ext in ALLOWED_IMAGE_EXTENSIONS}
    suffixes = tuple(f".{ext}" for ext in ALLOWED_IMAGE_EXTENSIONS)
    for img in images:
        if img.startswith("data:"):
            header, _, data = img.partition(",")
            if header.lower() not in allowed_types or _decoded_size(data) >= MAX_IMAGE_BYTES:
                raise HTTPException(status_code=400, detail="Each image must be a valid image < 20MB")
        elif not img.split("?", 1)[0].lower().endswith(suffixes):
            raise HTTPException(
                status_code=400,
                detail="Image must be a valid file with .jpg, .jpeg, .png, or .webp extension",
            )
    return images


def _find_review(db: Database, review_id: str) -> dict:
    review = None
    if ObjectId.is_valid(review_id):
        review = db["review"].find_one({"_id": ObjectId(review_id)})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    return review


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# --------- Endpoints ---------

@router.post("/{user_id}")
def create_review(
    user_id: str,
    payload: ReviewCreate,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    """Create one review per product id, all pointing at the same order."""
    user = ensure_self(user, user_id, "You are not allowed to create review", status_code=401)

    if payload.product_ids is None:
        raise HTTPException(status_code=400, detail="Product IDs are required")
    if not payload.product_ids:
        raise HTTPException(status_code=400, detail="At least one product ID is required")
    if not payload.order:
        raise HTTPException(status_code=400, detail="Order ID is required")
    rating = _check_rating(payload.rating)
    comment = _check_comment(payload.comment)
    images = _check_images(payload.image)

    if len(set(payload.product_ids)) != len(payload.product_ids) or db["review"].find_one(
        {"creator": user.id, "product": {"$in": payload.product_ids}}
    ):
        raise HTTPException(status_code=400, detail="You have already reviewed this product")

    created = []
    for product_id in payload.product_ids:
        review = Review(
            creator=user.id,
            product=product_id,
            order=payload.order,
            rating=rating,
            comment=comment,
            image=images,
        )
        inserted_id = create_document(db, "review", review)
        created.append(db["review"].find_one({"_id": ObjectId(inserted_id)}))
    logger.info("User %s created %d review(s) for order %s", user.id, len(created), payload.order)
    return [serialize_doc(r) for r in created]


@router.get("/product/{product_id}")
def get_product_reviews(
    product_id: str,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    sort: str = "newest",
    db: Database = Depends(get_db),
):
    if (page is not None and page < 1) or (limit is not None and limit < 1):
        raise HTTPException(status_code=400, detail="Invalid pagination parameters")
    page, limit, skip = page_params(page, limit)
    filt = {"product": product_id}
    count = db["review"].count_documents(filt)
    docs = get_documents(
        db, "review", filt, limit=limit, skip=skip, sort=SORT_OPTIONS.get(sort, SORT_OPTIONS["newest"])
    )
    rows = list(db["review"].aggregate([
        {"$match": filt},
        {"$group": {"_id": None, "average": {"$avg": "$rating"}}},
    ]))
    average = round(rows[0]["average"], 1) if rows and rows[0]["average"] is not None else 0
    return {
        "reviews": [serialize_doc(d) for d in docs],
        "average_rating": average,
        "total_reviews": count,
        "current_page": page,
        "total_pages": total_pages(count, limit),
    }


@router.get("/user/{user_id}")
def get_user_reviews(
    user_id: str,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    ensure_owner_or_admin(user, user_id, "You are not allowed to view this", status_code=401)
    page, limit, skip = page_params(page, limit)
    filt = {"creator": user_id}
    count = db["review"].count_documents(filt)
    docs = get_documents(db, "review", filt, limit=limit, skip=skip, sort=[("created_at", -1)])
    return {
        "reviews": [serialize_doc(d) for d in docs],
        "total_reviews": count,
        "current_page": page,
        "total_pages": total_pages(count, limit),
    }


@router.delete("/{review_id}")
def delete_review(
    review_id: str,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    review = _find_review(db, review_id)
    ensure_owner_or_admin(user, review.get("creator"), "You are not allowed to delete this review")
    db["review"].delete_one({"_id": review["_id"]})
    logger.info("Review %s deleted", review_id)
    return {"message": "Delete review of this product successfully"}


@router.put("/{review_id}")
def edit_review(
    review_id: str,
    payload: ReviewEdit,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    review = _find_review(db, review_id)
    ensure_owner_or_admin(user, review.get("creator"), "You are not allowed to edit this review")

    hours = config.REVIEW_EDIT_WINDOW_HOURS
    created_at = review.get("created_at")
    if created_at and utcnow() - created_at > timedelta(hours=hours):
        raise HTTPException(status_code=403, detail=f"You cannot edit reviews older than {hours} hours")

    updates = {}
    if payload.rating is not None:
        updates["rating"] = _check_rating(payload.rating)
    if payload.comment is not None:
        updates["comment"] = _check_comment(payload.comment)
    if payload.image is not None:
        updates["image"] = _check_images(payload.image)
    updates["updated_at"] = utcnow()

    doc = db["review"].find_one_and_update(
        {"_id": review["_id"]},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    return serialize_doc(doc)


@router.post("/reply/{review_id}")
def reply_review(
    review_id: str,
    payload: ReplyIn,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    """Set the admin reply; a second reply replaces the first."""
    user = ensure_admin(user, "You are not allowed to reply this review")
    review = _find_review(db, review_id)
    text = (payload.text or "").strip()
    if not text:
        raise HTTPException(status_code=400, detail="Reply text is required")
    if len(text) > MAX_REPLY_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Reply text exceeds maximum length of {MAX_REPLY_LENGTH} characters",
        )
    reply = ReviewReply(text=text, user_id=user.id, created_at=utcnow())
    doc = db["review"].find_one_and_update(
        {"_id": review["_id"]},
        {"$set": {"reply": [reply.model_dump()], "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Admin %s replied to review %s", user.id, review_id)
    return serialize_doc(doc)


@router.get("/star/{product_id}")
def filter_reviews_by_star(
    product_id: str,
    star: Optional[str] = None,
    has_images: bool = Query(False, alias="hasImages"),
    page: Optional[int] = None,
    limit: Optional[int] = None,
    db: Database = Depends(get_db),
):
    ratings = []
    if star:
        for part in star.split(","):
            part = part.strip()
            if not part.isdigit() or not 1 <= int(part) <= 5:
                raise HTTPException(status_code=400, detail="Invalid star rating.")
            ratings.append(int(part))
    elif not has_images:
        raise HTTPException(status_code=400, detail="Invalid star rating.")

    filt = {"product": product_id}
    if ratings:
        filt["rating"] = {"$in": ratings}
    if has_images:
        filt["image.0"] = {"$exists": True}

    page, limit, skip = page_params(page, limit)
    count = db["review"].count_documents(filt)
    docs = get_documents(db, "review", filt, limit=limit, skip=skip, sort=[("created_at", -1)])
    return {
        "reviews": [serialize_doc(d) for d in docs],
        "total_reviews": count,
        "current_page": page,
        "total_pages": total_pages(count, limit),
    }


@router.get("/statistic/{product_id}")
def review_statistics(
    product_id: str,
    from_date: Optional[datetime] = Query(None, alias="from"),
    db: Database = Depends(get_db),
):
    match = {"product": product_id}
    if from_date is not None:
        match["created_at"] = {"$gte": _naive_utc(from_date)}
    counts = {str(star): 0 for star in range(1, 6)}
    rows = db["review"].aggregate([
        {"$match": match},
        {"$group": {"_id": "$rating", "count": {"$sum": 1}}},
    ])
    for row in rows:
        key = str(row["_id"])
        if key in counts:
            counts[key] = row["count"]
    total = sum(counts.values())
    average = round(sum(int(k) * v for k, v in counts.items()) / total, 1) if total else 0
    return {"total": total, "average": average, "rating_counts": counts}
