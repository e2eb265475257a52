"""
Server-rendered pages: home, book browser, book detail and profile.

The pages read through the same catalog queries as the JSON API. Writes
(reviews, profile edits, sign-in) go from the browser straight to the API
with the bearer token kept in localStorage.
"""
import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.templating import Jinja2Templates

import catalog
from database import get_db
from ratings import summarize

logger = logging.getLogger(__name__)

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))

router = APIRouter(prefix="/app")

RATING_FILTERS = [("all", "All Ratings"), ("4+", "4+ Stars"), ("3+", "3+ Stars")]
SORT_OPTIONS = [
    ("newest", "Newest"),
    ("title", "Title"),
    ("author", "Author"),
    ("rating", "Rating"),
    ("reviews", "Most Reviews"),
]


def not_found(request: Request, what: str):
    logger.debug("%s not found for %s", what, request.url.path)
    return templates.TemplateResponse(request, "not_found.html", {"what": what}, status_code=404)


@router.get("")
def home(request: Request, db=Depends(get_db)):
    top_rated, _, _ = catalog.search_books(db, sort="rating", limit=6)
    newest, total, _ = catalog.search_books(db, limit=6)
    return templates.TemplateResponse(
        request, "index.html", {"top_rated": top_rated, "newest": newest, "total": total}
    )


@router.get("/books")
def browse(
    request: Request,
    search: Optional[str] = None,
    genre: Optional[str] = None,
    rating: Optional[str] = None,
    sort: Optional[str] = None,
    page: int = Query(1, ge=1, le=catalog.MAX_PAGE),
    db=Depends(get_db),
):
    books, total, total_pages = catalog.search_books(
        db, search=search, genre=genre, rating=rating, sort=sort, page=page, limit=12
    )
    return templates.TemplateResponse(
        request,
        "books.html",
        {
            "books": books,
            "total": total,
            "total_pages": total_pages,
            "page": page,
            "genres": catalog.list_genres(db),
            "rating_filters": RATING_FILTERS,
            "sort_options": SORT_OPTIONS,
            "params": {
                "search": search or "",
                "genre": genre or "all",
                "rating": rating or "all",
                "sort": sort or "newest",
            },
        },
    )


@router.get("/books/{book_id}")
def book_detail(request: Request, book_id: str, db=Depends(get_db)):
    book = catalog.find_book(db, book_id)
    if not book:
        return not_found(request, "Book")
    reviews = catalog.book_reviews(db, book_id)
    return templates.TemplateResponse(request, "book_detail.html", {"book": book, "reviews": reviews})


@router.get("/users/{user_id}")
def profile(request: Request, user_id: str, db=Depends(get_db)):
    user = catalog.find_user(db, user_id)
    if not user:
        return not_found(request, "User")
    reviews = catalog.user_reviews(db, user_id)
    avg, _ = summarize(r["rating"] for r in reviews)
    return templates.TemplateResponse(
        request, "profile.html", {"user": user, "reviews": reviews, "avg_given": avg}
    )


@router.get("/login")
def login_page(request: Request):
    return templates.TemplateResponse(request, "login.html", {})
