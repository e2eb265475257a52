import os
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, Field, EmailStr, ConfigDict, field_validator
from pydantic.alias_generators import to_camel
from jose import jwt, JWTError
from passlib.context import CryptContext
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import catalog
import database
import pages
from database import get_db, create_document, ensure_indexes, to_obj_id, sanitize, now, normalize_id
from ratings import recompute_book_rating
from schemas import (
    User as UserSchema, Book as BookSchema, Review as ReviewSchema,
    BookOut, BookPage, BookSummary, ReviewOut, ProfileOut, ProfileWithReviews,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(database.db)
    except PyMongoError as e:
        logger.warning("Could not ensure indexes at startup: %s", e)
    yield


# App and CORS
app = FastAPI(title="Book Review API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(pages.router)

# Auth setup
SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 24 * 60))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


# Error handling

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        errors.append({"field": ".".join(loc) or "body", "message": err.get("msg", "Invalid value")})
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"message": "Server error"})


# Helpers

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


async def get_current_user(token: str = Depends(oauth2_scheme), db=Depends(get_db)):
    credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None or not ObjectId.is_valid(user_id):
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise credentials_exception
    return sanitize(user)


def require_role(*roles: str):
    async def role_dep(current_user=Depends(get_current_user)):
        if current_user.get("role") not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return current_user
    return role_dep


def as_datetime(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


# Request/Response Models
class CamelRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: ProfileOut


class BookCreateRequest(CamelRequest):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    genre: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    published_date: date
    cover_image: str = ""
    isbn: Optional[str] = None
    pages: Optional[int] = Field(None, ge=1)

    @field_validator("isbn")
    @classmethod
    def blank_isbn_is_none(cls, v):
        return v or None


class BookUpdateRequest(CamelRequest):
    title: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = Field(None, min_length=1)
    genre: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    published_date: Optional[date] = None
    cover_image: Optional[str] = None
    isbn: Optional[str] = None
    pages: Optional[int] = Field(None, ge=1)


class ReviewCreateRequest(CamelRequest):
    book_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=10, max_length=1000)

    @field_validator("book_id")
    @classmethod
    def valid_book_id(cls, v):
        if not ObjectId.is_valid(v):
            raise ValueError("Valid book ID is required")
        return str(ObjectId(v))


class ReviewUpdateRequest(CamelRequest):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=10, max_length=1000)


class ProfileUpdateRequest(CamelRequest):
    username: Optional[str] = Field(None, min_length=3, max_length=50)
    email: Optional[EmailStr] = None
    bio: Optional[str] = Field(None, max_length=500)
    profile_image: Optional[str] = None


class ReviewDeleted(BaseModel):
    message: str
    book: Optional[BookSummary] = None


# Auth Routes
@app.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterRequest, db=Depends(get_db)):
    existing = db["user"].find_one({"$or": [{"email": payload.email}, {"username": payload.username}]})
    if existing:
        raise HTTPException(status_code=409, detail="Email or username already registered")
    user_doc = UserSchema(
        username=payload.username,
        email=payload.email,
        password_hash=hash_password(payload.password),
        role="user",
    )
    try:
        uid = create_document(db, "user", user_doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Email or username already registered")
    logger.info("Registered user %s (%s)", payload.username, uid)
    token = create_access_token({"sub": uid})
    return TokenResponse(access_token=token, user=ProfileOut(**catalog.find_user(db, uid)))


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest, db=Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    token = create_access_token({"sub": str(user["_id"])})
    return TokenResponse(access_token=token, user=ProfileOut(**sanitize(user)))


@app.get("/auth/me", response_model=ProfileOut)
def me(current_user=Depends(get_current_user)):
    return current_user


# Book Routes
@app.get("/books", response_model=BookPage)
def list_books(
    search: Optional[str] = None,
    genre: Optional[str] = None,
    rating: Optional[str] = None,
    sort: Optional[str] = None,
    page: int = Query(1, ge=1, le=catalog.MAX_PAGE),
    limit: int = Query(12, ge=1, le=100),
    db=Depends(get_db),
):
    books, total, total_pages = catalog.search_books(
        db, search=search, genre=genre, rating=rating, sort=sort, page=page, limit=limit
    )
    return {"books": books, "total_pages": total_pages, "current_page": page, "total": total}


@app.get("/books/{book_id}", response_model=BookOut)
def get_book(book_id: str, db=Depends(get_db)):
    book = catalog.find_book(db, book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return book


@app.post("/books", response_model=BookOut, status_code=201)
def create_book(payload: BookCreateRequest, admin=Depends(require_role("admin")), db=Depends(get_db)):
    if payload.isbn and db["book"].find_one({"isbn": payload.isbn}):
        raise HTTPException(status_code=409, detail="A book with this ISBN already exists")
    book_doc = BookSchema(
        **payload.model_dump(exclude={"published_date"}),
        published_date=as_datetime(payload.published_date),
        created_by=admin["id"],
    ).model_dump()
    if book_doc.get("isbn") is None:
        book_doc.pop("isbn")
    try:
        bid = create_document(db, "book", book_doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="A book with this ISBN already exists")
    logger.info("Book %s created by %s", bid, admin["id"])
    return catalog.find_book(db, bid)


@app.put("/books/{book_id}", response_model=BookOut)
def update_book(book_id: str, payload: BookUpdateRequest, admin=Depends(require_role("admin")), db=Depends(get_db)):
    oid = to_obj_id(book_id, "Book not found")
    changes = payload.model_dump(exclude_unset=True)
    update: Dict[str, Any] = {k: v for k, v in changes.items() if v is not None}
    if "published_date" in update:
        update["published_date"] = as_datetime(update["published_date"])
    if update.get("isbn") and db["book"].find_one({"isbn": update["isbn"], "_id": {"$ne": oid}}):
        raise HTTPException(status_code=409, detail="A book with this ISBN already exists")
    ops: Dict[str, Any] = {}
    if "isbn" in changes and not changes["isbn"]:
        update.pop("isbn", None)
        ops["$unset"] = {"isbn": ""}
    if update or ops:
        ops["$set"] = {**update, "updated_at": now()}
        try:
            res = db["book"].find_one_and_update({"_id": oid}, ops, return_document=ReturnDocument.AFTER)
        except DuplicateKeyError:
            raise HTTPException(status_code=409, detail="A book with this ISBN already exists")
        if res is None:
            raise HTTPException(status_code=404, detail="Book not found")
    book = catalog.find_book(db, book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return book


@app.delete("/books/{book_id}")
def delete_book(book_id: str, admin=Depends(require_role("admin")), db=Depends(get_db)):
    oid = to_obj_id(book_id, "Book not found")
    book = db["book"].find_one_and_delete({"_id": oid})
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    # Two separate writes; reviews are removed after their book
    res = db["review"].delete_many({"book_id": str(oid)})
    logger.info("Book %s deleted by %s with %d reviews", book_id, admin["id"], res.deleted_count)
    return {"message": "Book deleted successfully", "deletedReviews": res.deleted_count}


# Review Routes
@app.get("/reviews", response_model=List[ReviewOut])
def list_reviews(book_id: Optional[str] = Query(None, alias="bookId"), db=Depends(get_db)):
    if not book_id:
        raise HTTPException(status_code=400, detail="Book ID is required")
    return catalog.book_reviews(db, book_id)


def _review_out(db, review: Dict, book: Optional[Dict]) -> Dict:
    r = sanitize(review)
    r["user"] = catalog.user_summaries(db, [r["user_id"]]).get(r["user_id"])
    r["book"] = sanitize(book) if book else None
    return r


@app.post("/reviews", response_model=ReviewOut, status_code=201)
def create_review(payload: ReviewCreateRequest, current_user=Depends(get_current_user), db=Depends(get_db)):
    if not db["book"].find_one({"_id": ObjectId(payload.book_id)}):
        raise HTTPException(status_code=404, detail="Book not found")
    duplicate = HTTPException(status_code=400, detail="You have already reviewed this book")
    if db["review"].find_one({"user_id": current_user["id"], "book_id": payload.book_id}):
        raise duplicate
    review = ReviewSchema(user_id=current_user["id"], **payload.model_dump())
    try:
        rid = create_document(db, "review", review)
    except DuplicateKeyError:
        raise duplicate
    logger.info("Review %s created by %s for book %s", rid, current_user["id"], payload.book_id)
    book = recompute_book_rating(db, payload.book_id)
    return _review_out(db, db["review"].find_one({"_id": ObjectId(rid)}), book)


@app.put("/reviews/{review_id}", response_model=ReviewOut)
def update_review(review_id: str, payload: ReviewUpdateRequest, current_user=Depends(get_current_user), db=Depends(get_db)):
    not_found = "Review not found or unauthorized"
    review = db["review"].find_one_and_update(
        {"_id": to_obj_id(review_id, not_found), "user_id": current_user["id"]},
        {"$set": {**payload.model_dump(), "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if not review:
        raise HTTPException(status_code=404, detail=not_found)
    book = recompute_book_rating(db, review["book_id"])
    return _review_out(db, review, book)


@app.delete("/reviews/{review_id}", response_model=ReviewDeleted)
def delete_review(review_id: str, current_user=Depends(get_current_user), db=Depends(get_db)):
    not_found = "Review not found or unauthorized"
    review = db["review"].find_one_and_delete(
        {"_id": to_obj_id(review_id, not_found), "user_id": current_user["id"]}
    )
    if not review:
        raise HTTPException(status_code=404, detail=not_found)
    logger.info("Review %s deleted by %s", review_id, current_user["id"])
    book = recompute_book_rating(db, review["book_id"])
    return {"message": "Review deleted successfully", "book": sanitize(book) if book else None}


# User Routes
@app.get("/users/{user_id}", response_model=ProfileWithReviews)
def get_profile(user_id: str, db=Depends(get_db)):
    user = catalog.find_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": user, "reviews": catalog.user_reviews(db, user_id)}


@app.put("/users/{user_id}")
def update_profile(user_id: str, payload: ProfileUpdateRequest, current_user=Depends(get_current_user), db=Depends(get_db)):
    if normalize_id(user_id) != current_user["id"]:
        raise HTTPException(status_code=403, detail="You can only update your own profile")
    oid = to_obj_id(user_id, "User not found")
    changes = payload.model_dump(exclude_unset=True)
    clash = [{k: changes[k]} for k in ("username", "email") if changes.get(k)]
    if clash and db["user"].find_one({"_id": {"$ne": oid}, "$or": clash}):
        raise HTTPException(status_code=400, detail="Username or email already exists")
    update: Dict[str, Any] = {}
    # blank username/email keep the current value; bio and avatar may be cleared
    if changes.get("username"):
        update["username"] = changes["username"]
    if changes.get("email"):
        update["email"] = changes["email"]
    if "bio" in changes:
        update["bio"] = changes["bio"]
    if "profile_image" in changes:
        update["profile_image"] = changes["profile_image"]
    update["updated_at"] = now()
    try:
        user = db["user"].find_one_and_update({"_id": oid}, {"$set": update}, return_document=ReturnDocument.AFTER)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Username or email already exists")
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("Profile %s updated", user_id)
    return {"user": ProfileOut(**sanitize(user)).model_dump(by_alias=True, mode="json")}


@app.get("/users/{user_id}/reviews", response_model=List[ReviewOut])
def get_user_reviews(user_id: str, db=Depends(get_db)):
    return catalog.user_reviews(db, user_id)


# Bootstrap route for first deployment
@app.post("/init/bootstrap")
def bootstrap_admin(db=Depends(get_db)):
    """Create the configured admin account if no admin exists yet."""
    if db["user"].count_documents({"role": "admin"}) > 0:
        raise HTTPException(status_code=400, detail="Admin already exists")
    email = os.getenv("ADMIN_EMAIL", "admin@example.com")
    user_doc = UserSchema(
        username=os.getenv("ADMIN_USERNAME", "admin"),
        email=email,
        password_hash=hash_password(os.getenv("ADMIN_PASSWORD", "Admin@123")),
        role="admin",
    )
    try:
        create_document(db, "user", user_doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Admin username or email is taken")
    logger.info("Bootstrap admin %s created", email)
    return {"message": "Admin created", "email": email}


# Utility endpoints
@app.get("/")
def root():
    return {"message": "Book Review API running"}


@app.get("/test")
def test_database(db=Depends(get_db)):
    try:
        collections = db.list_collection_names()
        return {"backend": "ok", "database": "ok", "collections": collections}
    except PyMongoError as e:
        return {"backend": "ok", "database": f"error: {e}"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
