"""
Database Schemas for the Book Review service

MongoDB collections are defined below using Pydantic models. Each class name is
converted to lowercase for the collection name (Book -> "book").

We will use these collections:
- user: readers and administrators
- book: the catalog, with a cached aggregate rating
- review: one rating + comment per (user, book)

Fields are stored in snake_case; the HTTP surface speaks camelCase through the
*Out models at the bottom of this module.
"""

from datetime import datetime
from typing import Optional, Literal, List

from pydantic import BaseModel, Field, EmailStr, ConfigDict
from pydantic.alias_generators import to_camel

Role = Literal["admin", "user"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class User(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of password")
    role: Role = Field("user")
    bio: Optional[str] = Field(None, max_length=500)
    profile_image: Optional[str] = None


class Book(BaseModel):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    genre: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    cover_image: str = ""
    published_date: datetime
    isbn: Optional[str] = None
    pages: Optional[int] = Field(None, ge=1)
    avg_rating: float = Field(0, ge=0, le=5, description="Derived from reviews")
    review_count: int = Field(0, ge=0, description="Derived from reviews")
    created_by: str = Field(..., description="Reference to user _id")


class Review(BaseModel):
    user_id: str = Field(...)
    book_id: str = Field(...)
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=10, max_length=1000)


# Response models

class UserSummary(CamelModel):
    id: str
    username: str
    profile_image: Optional[str] = None


class BookSummary(CamelModel):
    id: str
    title: str
    author: str
    cover_image: str = ""
    avg_rating: float = 0
    review_count: int = 0


class BookOut(CamelModel):
    id: str
    title: str
    author: str
    genre: str
    description: str
    cover_image: str = ""
    published_date: datetime
    isbn: Optional[str] = None
    pages: Optional[int] = None
    avg_rating: float = 0
    review_count: int = 0
    created_by: Optional[UserSummary] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BookPage(CamelModel):
    books: List[BookOut]
    total_pages: int
    current_page: int
    total: int


class ReviewOut(CamelModel):
    id: str
    user_id: str
    book_id: str
    rating: int
    comment: str
    user: Optional[UserSummary] = None
    book: Optional[BookSummary] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProfileOut(CamelModel):
    id: str
    username: str
    email: str
    bio: Optional[str] = None
    profile_image: Optional[str] = None
    role: Role = "user"
    created_at: Optional[datetime] = None


class ProfileWithReviews(CamelModel):
    user: ProfileOut
    reviews: List[ReviewOut]
