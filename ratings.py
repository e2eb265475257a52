"""
Aggregate rating maintenance.

`book.avg_rating` and `book.review_count` are caches of the review set. Any
code that inserts, re-rates or deletes a review calls `recompute_book_rating`
afterwards with the affected book id.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import now

logger = logging.getLogger(__name__)

ONE_DECIMAL = Decimal("0.1")


def summarize(ratings: Iterable[int]) -> Tuple[float, int]:
    """Return (average, count) for a set of ratings; (0, 0) when empty.

    The mean is rounded half away from zero at the first decimal, so
    [5, 4, 5] gives 4.7 and [4, 5] gives 4.5.
    """
    values = [int(r) for r in ratings]
    if not values:
        return 0, 0
    mean = Decimal(sum(values)) / Decimal(len(values))
    return float(mean.quantize(ONE_DECIMAL, rounding=ROUND_HALF_UP)), len(values)


def recompute_book_rating(db: Database, book_id: str) -> Optional[Dict]:
    """Recalculate a book's aggregate from its current reviews.

    Returns the updated book document, or None if the book is gone.
    """
    try:
        oid = ObjectId(book_id)
    except (InvalidId, TypeError):
        return None
    ratings = [r["rating"] for r in db["review"].find({"book_id": str(oid)}, {"rating": 1})]
    avg, count = summarize(ratings)
    book = db["book"].find_one_and_update(
        {"_id": oid},
        {"$set": {"avg_rating": avg, "review_count": count, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if book is None:
        logger.debug("Book %s no longer exists, skipping rating update", book_id)
        return None
    logger.debug("Book %s rating recomputed: avg=%s count=%s", book_id, avg, count)
    return book
