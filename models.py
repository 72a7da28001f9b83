from __future__ import annotations

import math
from datetime import datetime, timedelta
from secrets import token_hex
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from bson import ObjectId
from bson.errors import InvalidId
from flask import current_app
from flask_login import UserMixin
from pymongo import ASCENDING, DESCENDING, GEOSPHERE
from pymongo.database import Database
from werkzeug.security import check_password_hash, generate_password_hash

DEFAULT_PROFILE_IMAGE = "/static/images/default.jpg"
RESET_TOKEN_TTL = timedelta(hours=1)


def get_db() -> Database:
    return current_app.extensions["mongo_db"]


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if value in (None, ""):
        return None
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


class MongoDocument:
    collection_name: str = ""

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self._data = data or {}

    def __getattr__(self, item: str) -> Any:
        if item.startswith("__"):
            raise AttributeError(item)
        if item == "id":
            _id = self._data.get("_id")
            return str(_id) if _id is not None else None
        value = self._data.get(item)
        if isinstance(value, ObjectId):
            return str(value)
        return value

    @classmethod
    def collection(cls):
        return get_db()[cls.collection_name]

    @property
    def mongo_id(self) -> Optional[ObjectId]:
        return self._data.get("_id")

    @classmethod
    def get(cls, doc_id: Any):
        oid = to_object_id(doc_id)
        if not oid:
            return None
        doc = cls.collection().find_one({"_id": oid})
        return cls(doc) if doc else None

    def update(self, fields: Dict[str, Any]) -> None:
        self._data.update(fields)
        if self.mongo_id:
            self.collection().update_one({"_id": self.mongo_id}, {"$set": fields})

    def delete(self) -> None:
        if self.mongo_id:
            self.collection().delete_one({"_id": self.mongo_id})


class User(UserMixin, MongoDocument):
    collection_name = "users"

    def get_id(self) -> Optional[str]:
        return str(self._data.get("_id")) if self._data.get("_id") else None

    @staticmethod
    def normalize_email(email: str) -> str:
        return (email or "").strip().lower()

    @classmethod
    def get_by_email(cls, email: str) -> Optional["User"]:
        normalized = cls.normalize_email(email)
        if not normalized:
            return None
        doc = cls.collection().find_one({"email_lower": normalized})
        return cls(doc) if doc else None

    @classmethod
    def get_by_username(cls, username: str) -> Optional["User"]:
        username = (username or "").strip()
        if not username:
            return None
        doc = cls.collection().find_one({"username": username})
        return cls(doc) if doc else None

    @classmethod
    def get_by_reset_token(cls, token: str) -> Optional["User"]:
        if not token:
            return None
        doc = cls.collection().find_one(
            {
                "reset_password_token": token,
                "reset_password_expires": {"$gt": datetime.utcnow()},
            }
        )
        return cls(doc) if doc else None

    @classmethod
    def register(cls, username: str, email: str, password: str, image: Optional[Dict[str, Any]] = None) -> "User":
        """Insert a new account; duplicate username or email raises ``DuplicateKeyError``."""
        user = cls(
            {
                "username": username.strip(),
                "email": email.strip(),
                "email_lower": cls.normalize_email(email),
                "image": image or {"secure_url": DEFAULT_PROFILE_IMAGE, "public_id": None},
                "created_at": datetime.utcnow(),
            }
        )
        user.set_password(password)
        result = cls.collection().insert_one(user._data)
        user._data["_id"] = result.inserted_id
        return user

    @classmethod
    def authenticate(cls, username: str, password: str) -> Optional["User"]:
        user = cls.get_by_username(username)
        if user and user.check_password(password):
            return user
        return None

    def set_password(self, password: str) -> None:
        self._data["password_hash"] = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        stored = self._data.get("password_hash")
        if not stored or not password:
            return False
        return check_password_hash(stored, password)

    def start_password_reset(self) -> str:
        token = token_hex(20)
        self.update(
            {
                "reset_password_token": token,
                "reset_password_expires": datetime.utcnow() + RESET_TOKEN_TTL,
            }
        )
        return token

    def finish_password_reset(self, password: str) -> None:
        self.set_password(password)
        self._data.pop("reset_password_token", None)
        self._data.pop("reset_password_expires", None)
        self.collection().update_one(
            {"_id": self.mongo_id},
            {
                "$set": {"password_hash": self._data["password_hash"]},
                "$unset": {"reset_password_token": "", "reset_password_expires": ""},
            },
        )

    @property
    def image_url(self) -> str:
        image = self._data.get("image") or {}
        return image.get("secure_url") or DEFAULT_PROFILE_IMAGE

    @property
    def image_public_id(self) -> Optional[str]:
        image = self._data.get("image") or {}
        return image.get("public_id")


class Review(MongoDocument):
    collection_name = "reviews"

    def __init__(self, data: Optional[Dict[str, Any]] = None, author: Optional[User] = None) -> None:
        super().__init__(data)
        self.author_user = author

    @classmethod
    def for_post(cls, post_id: ObjectId) -> List["Review"]:
        docs = list(cls.collection().find({"post": post_id}).sort("created_at", DESCENDING))
        author_ids = {doc.get("author") for doc in docs if doc.get("author")}
        authors: Dict[ObjectId, User] = {}
        if author_ids:
            cursor = User.collection().find({"_id": {"$in": list(author_ids)}})
            authors = {doc["_id"]: User(doc) for doc in cursor}
        return [cls(doc, author=authors.get(doc.get("author"))) for doc in docs]

    @classmethod
    def exists_for(cls, author_id: ObjectId, post_id: ObjectId) -> bool:
        return cls.collection().count_documents({"author": author_id, "post": post_id}, limit=1) > 0

    @classmethod
    def create(cls, author_id: ObjectId, post_id: ObjectId, rating: int, body: str) -> "Review":
        review = cls(
            {
                "author": author_id,
                "post": post_id,
                "rating": rating,
                "body": body,
                "created_at": datetime.utcnow(),
            }
        )
        result = cls.collection().insert_one(review._data)
        review._data["_id"] = result.inserted_id
        return review


class Page(NamedTuple):
    items: List[Any]
    page: int
    pages: int
    total: int

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.pages


class Post(MongoDocument):
    collection_name = "posts"

    def __init__(self, data: Optional[Dict[str, Any]] = None, author: Optional[User] = None) -> None:
        super().__init__(data)
        self.author_user = author

    @classmethod
    def create(
        cls,
        author_id: ObjectId,
        title: str,
        description: str,
        price: float,
        location: str,
        coordinates: List[float],
        images: List[Dict[str, str]],
    ) -> "Post":
        post = cls(
            {
                "title": title,
                "description": description,
                "price": price,
                "location": location,
                "geometry": {"type": "Point", "coordinates": coordinates},
                "images": images,
                "author": author_id,
                "reviews": [],
                "avgRating": 0,
                "created_at": datetime.utcnow(),
            }
        )
        result = cls.collection().insert_one(post._data)
        post._data["_id"] = result.inserted_id
        return post

    @classmethod
    def latest(cls, limit: int = 3) -> List["Post"]:
        return hydrate_posts(cls.collection().find().sort("_id", DESCENDING).limit(limit))

    @classmethod
    def by_author(cls, author_id: ObjectId, limit: int = 10) -> List["Post"]:
        return [cls(doc) for doc in cls.collection().find({"author": author_id}).sort("_id", DESCENDING).limit(limit)]

    @classmethod
    def paginate(cls, db_query: Dict[str, Any], count_query: Dict[str, Any], page: int, per_page: int) -> Page:
        """Newest-first page of posts.

        ``count_query`` must be free of ``$near``, which ``count_documents`` refuses.
        """
        total = cls.collection().count_documents(count_query)
        pages = max(1, math.ceil(total / per_page))
        page = min(max(1, page), pages)
        docs = cls.collection().find(db_query).sort("_id", DESCENDING).skip((page - 1) * per_page).limit(per_page)
        return Page(hydrate_posts(docs), page, pages, total)

    @property
    def coordinates(self) -> List[float]:
        return (self._data.get("geometry") or {}).get("coordinates") or []

    @property
    def image_list(self) -> List[Dict[str, str]]:
        return list(self._data.get("images") or [])

    def add_review(self, review: Review) -> None:
        self._data.setdefault("reviews", []).append(review.mongo_id)
        self.collection().update_one({"_id": self.mongo_id}, {"$push": {"reviews": review.mongo_id}})
        self.recalculate_rating()

    def remove_review(self, review: Review) -> None:
        self._data["reviews"] = [r for r in self._data.get("reviews") or [] if r != review.mongo_id]
        self.collection().update_one({"_id": self.mongo_id}, {"$pull": {"reviews": review.mongo_id}})
        self.recalculate_rating()

    def recalculate_rating(self) -> int:
        ratings = [doc.get("rating", 0) for doc in Review.collection().find({"post": self.mongo_id}, {"rating": 1})]
        avg = math.floor(sum(ratings) / len(ratings)) if ratings else 0
        self.update({"avgRating": avg})
        return avg


def hydrate_posts(post_docs: Iterable[Dict[str, Any]]) -> List[Post]:
    docs = list(post_docs)
    if not docs:
        return []
    author_ids = {doc.get("author") for doc in docs if doc.get("author")}
    authors: Dict[ObjectId, User] = {}
    if author_ids:
        cursor = User.collection().find({"_id": {"$in": list(author_ids)}})
        authors = {doc["_id"]: User(doc) for doc in cursor}
    return [Post(doc, author=authors.get(doc.get("author"))) for doc in docs]


def ensure_indexes(db: Database) -> None:
    db.users.create_index("email_lower", unique=True)
    db.users.create_index("username", unique=True)
    db.users.create_index("reset_password_token", sparse=True)
    db.posts.create_index([("geometry", GEOSPHERE)])
    db.posts.create_index("author")
    db.reviews.create_index("post")
    db.reviews.create_index([("author", ASCENDING), ("post", ASCENDING)], unique=True)
