"""Read-side queries shared by the JSON API and the HTML pages."""
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from database import sanitize, normalize_id

NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]

SORT_KEYS = {
    "title": [("title", ASCENDING)],
    "author": [("author", ASCENDING)],
    "rating": [("avg_rating", DESCENDING)],
    "reviews": [("review_count", DESCENDING)],
}

MIN_RATINGS = {"3+": 3, "4+": 4}

# keeps (page - 1) * limit well inside the int64 skip Mongo accepts
MAX_PAGE = 100_000


def sort_order(sort: Optional[str]) -> List[Tuple[str, int]]:
    """Unknown or missing sort keys fall back to newest first."""
    return SORT_KEYS.get(sort or "", []) + NEWEST_FIRST


def build_book_query(search: Optional[str] = None, genre: Optional[str] = None,
                     rating: Optional[str] = None) -> Dict[str, Any]:
    q: Dict[str, Any] = {}
    if search and search.strip():
        regex = {"$regex": re.escape(search.strip()), "$options": "i"}
        q["$or"] = [{"title": regex}, {"author": regex}, {"genre": regex}]
    if genre and genre != "all":
        q["genre"] = genre
    if rating in MIN_RATINGS:
        q["avg_rating"] = {"$gte": MIN_RATINGS[rating]}
    return q


def _object_ids(ids) -> List[ObjectId]:
    out = []
    for i in ids:
        try:
            out.append(ObjectId(i))
        except (InvalidId, TypeError):
            continue
    return out


def user_summaries(db: Database, user_ids) -> Dict[str, Dict]:
    oids = _object_ids(set(user_ids))
    if not oids:
        return {}
    cursor = db["user"].find({"_id": {"$in": oids}}, {"username": 1, "profile_image": 1})
    return {str(u["_id"]): sanitize(u) for u in cursor}


def book_summaries(db: Database, book_ids) -> Dict[str, Dict]:
    oids = _object_ids(set(book_ids))
    if not oids:
        return {}
    projection = {"title": 1, "author": 1, "cover_image": 1, "avg_rating": 1, "review_count": 1}
    return {str(b["_id"]): sanitize(b) for b in db["book"].find({"_id": {"$in": oids}}, projection)}


def attach_creators(db: Database, books: List[Dict]) -> List[Dict]:
    users = user_summaries(db, [b.get("created_by") for b in books if b.get("created_by")])
    for b in books:
        b["created_by"] = users.get(b.get("created_by"))
    return books


def search_books(db: Database, search: Optional[str] = None, genre: Optional[str] = None,
                 rating: Optional[str] = None, sort: Optional[str] = None,
                 page: int = 1, limit: int = 12) -> Tuple[List[Dict], int, int]:
    """Return one page of books plus the total match count and page count."""
    q = build_book_query(search, genre, rating)
    skip = (page - 1) * limit
    cursor = db["book"].find(q).sort(sort_order(sort)).skip(skip).limit(limit)
    books = attach_creators(db, [sanitize(b) for b in cursor])
    total = db["book"].count_documents(q)
    return books, total, math.ceil(total / limit)


def list_genres(db: Database) -> List[str]:
    return sorted(g for g in db["book"].distinct("genre") if g)


def find_book(db: Database, book_id: str) -> Optional[Dict]:
    oids = _object_ids([book_id])
    if not oids:
        return None
    book = db["book"].find_one({"_id": oids[0]})
    if not book:
        return None
    return attach_creators(db, [sanitize(book)])[0]


def find_user(db: Database, user_id: str) -> Optional[Dict]:
    oids = _object_ids([user_id])
    if not oids:
        return None
    user = db["user"].find_one({"_id": oids[0]}, {"password_hash": 0})
    return sanitize(user) if user else None


def book_reviews(db: Database, book_id: str) -> List[Dict]:
    book_id = normalize_id(book_id)
    if not book_id:
        return []
    reviews = [sanitize(r) for r in db["review"].find({"book_id": book_id}).sort(NEWEST_FIRST)]
    users = user_summaries(db, [r["user_id"] for r in reviews])
    for r in reviews:
        r["user"] = users.get(r["user_id"])
    return reviews


def user_reviews(db: Database, user_id: str) -> List[Dict]:
    user_id = normalize_id(user_id)
    if not user_id:
        return []
    reviews = [sanitize(r) for r in db["review"].find({"user_id": user_id}).sort(NEWEST_FIRST)]
    books = book_summaries(db, [r["book_id"] for r in reviews])
    for r in reviews:
        r["book"] = books.get(r["book_id"])
    return reviews
