"""Route guards and the post search/filter query builder.

Guards never touch the HTTP layer themselves: each one inspects a
:class:`GuardContext` and returns ``None`` to let the request through or a
directive (:class:`Redirect` or :class:`NotFound`) that the Flask binding at
the bottom of this module turns into a response.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Union

from flask import abort, current_app, flash, g, redirect, request, session
from flask_login import current_user

from geocoding import GeocodingClient, parse_coordinates
from media import ImageStorage, UploadedImage

METERS_PER_MILE = 1609.34
DEFAULT_DISTANCE_MILES = 25
EARTH_RADIUS_METERS = 6378100

_REGEX_SPECIALS = re.compile(r"[-/\\^$*+?.()|\[\]{}]")


# --- search & filter -------------------------------------------------------


def escape_regexp(text: str) -> str:
    return _REGEX_SPECIALS.sub(lambda m: "\\" + m.group(0), text)


def _float(raw: Optional[str]) -> Optional[float]:
    if raw in (None, ""):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def _distance(raw: Optional[str]) -> Optional[float]:
    # zero or negative falls back to the default radius
    value = _float(raw)
    return value if value is not None and value > 0 else None


@dataclass
class SearchQuery:
    search: Optional[str] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    avg_rating: List[int] = field(default_factory=list)
    location: Optional[str] = None
    distance: Optional[float] = None
    page: int = 1
    keys: List[str] = field(default_factory=list)

    @classmethod
    def from_args(cls, args: Any) -> "SearchQuery":
        """Validate a request's query string (a werkzeug ``MultiDict``)."""
        ratings: List[int] = []
        for raw in args.getlist("avgRating") + args.getlist("avgRating[]"):
            try:
                rating = int(raw)
            except (TypeError, ValueError):
                continue
            if 0 <= rating <= 5 and rating not in ratings:
                ratings.append(rating)
        try:
            page = max(1, int(args.get("page", 1)))
        except (TypeError, ValueError):
            page = 1
        return cls(
            search=(args.get("search") or "").strip() or None,
            price_min=_float(args.get("price[min]", args.get("price.min"))),
            price_max=_float(args.get("price[max]", args.get("price.max"))),
            avg_rating=ratings,
            location=(args.get("location") or "").strip() or None,
            distance=_distance(args.get("distance")),
            page=page,
            keys=list(args.keys()),
        )

    @property
    def max_distance_meters(self) -> float:
        miles = self.distance if self.distance is not None else DEFAULT_DISTANCE_MILES
        return miles * METERS_PER_MILE


class SearchResult(NamedTuple):
    db_query: Dict[str, Any]
    query: SearchQuery
    paginate_url: str


def build_search_filter(query: SearchQuery, geocoder: GeocodingClient) -> Dict[str, Any]:
    db_queries: List[Dict[str, Any]] = []

    if query.search:
        pattern = {"$regex": escape_regexp(query.search), "$options": "i"}
        db_queries.append(
            {"$or": [{"title": pattern}, {"description": pattern}, {"location": pattern}]}
        )

    if query.location:
        coordinates = parse_coordinates(query.location)
        if coordinates is None:
            coordinates = geocoder.forward_geocode(query.location)
        db_queries.append(
            {
                "geometry": {
                    "$near": {
                        "$geometry": {"type": "Point", "coordinates": coordinates},
                        "$maxDistance": query.max_distance_meters,
                    }
                }
            }
        )

    if query.price_min is not None:
        db_queries.append({"price": {"$gte": query.price_min}})
    if query.price_max is not None:
        db_queries.append({"price": {"$lte": query.price_max}})

    if query.avg_rating:
        db_queries.append({"avgRating": {"$in": list(query.avg_rating)}})

    return {"$and": db_queries} if db_queries else {}


def build_paginate_url(url: str) -> str:
    """Return ``url`` without its ``page`` parameter, ready for ``page=N`` to be appended."""
    path, _, query_string = url.partition("?")
    remaining = [
        part for part in query_string.split("&") if part and part.split("=", 1)[0] != "page"
    ]
    if remaining:
        return f"{path}?{'&'.join(remaining)}&page="
    return f"{path}?page="


def search_and_filter_posts(query: SearchQuery, url: str, geocoder: GeocodingClient) -> SearchResult:
    db_query = build_search_filter(query, geocoder) if query.keys else {}
    return SearchResult(db_query, query, build_paginate_url(url))


def countable_query(db_query: Any) -> Any:
    """Swap ``$near`` for the equivalent ``$geoWithin`` so the query can be counted."""
    if isinstance(db_query, list):
        return [countable_query(item) for item in db_query]
    if not isinstance(db_query, dict):
        return db_query
    if "$near" in db_query:
        near = db_query["$near"]
        coordinates = near["$geometry"]["coordinates"]
        radians = near.get("$maxDistance", 0) / EARTH_RADIUS_METERS
        return {"$geoWithin": {"$centerSphere": [coordinates, radians]}}
    return {key: countable_query(value) for key, value in db_query.items()}


# --- guards ----------------------------------------------------------------


class Redirect(NamedTuple):
    location: str
    error: Optional[str] = None
    remember: Optional[str] = None


class NotFound(NamedTuple):
    message: str = "Not found"


Directive = Union[Redirect, NotFound]


@dataclass
class GuardContext:
    user: Any
    params: Mapping[str, Any] = field(default_factory=dict)
    form: Mapping[str, Any] = field(default_factory=dict)
    upload: Optional[UploadedImage] = None
    url: str = "/"
    referrer: Optional[str] = None
    locals: Dict[str, Any] = field(default_factory=dict)


class Guards:
    def __init__(self, users: Any, posts: Any, reviews: Any, images: ImageStorage) -> None:
        self.users = users
        self.posts = posts
        self.reviews = reviews
        self.images = images

    def is_logged_in(self, ctx: GuardContext) -> Optional[Directive]:
        if ctx.user is not None and ctx.user.is_authenticated:
            return None
        return Redirect("/login", "You need to be logged in to do that!", remember=ctx.url)

    def is_author(self, ctx: GuardContext) -> Optional[Directive]:
        post = self.posts.get(ctx.params.get("id"))
        if post is None:
            return NotFound("Post not found")
        if post.author is not None and post.author == ctx.user.id:
            ctx.locals["post"] = post
            return None
        return Redirect(ctx.referrer or "/", "Access denied!")

    def is_review_author(self, ctx: GuardContext) -> Optional[Directive]:
        review = self.reviews.get(ctx.params.get("review_id"))
        if review is None:
            return NotFound("Review not found")
        if ctx.params.get("id") is not None and review.post != ctx.params["id"]:
            return NotFound("Review not found")
        if review.author is not None and review.author == ctx.user.id:
            ctx.locals["review"] = review
            return None
        return Redirect("/", "Bye bye")

    def is_valid_password(self, ctx: GuardContext) -> Optional[Directive]:
        user = self.users.authenticate(ctx.user.username, ctx.form.get("currentPassword") or "")
        if user:
            ctx.locals["user"] = user
            return None
        self.delete_profile_image(ctx)
        return Redirect("/profile", "Incorrect current password")

    def change_password(self, ctx: GuardContext) -> Optional[Directive]:
        new_password = ctx.form.get("newPassword")
        confirmation = ctx.form.get("passwordConfirmation")
        if new_password and not confirmation:
            self.delete_profile_image(ctx)
            return Redirect("/profile", "Missing password confirmation!")
        if confirmation and not new_password:
            self.delete_profile_image(ctx)
            return Redirect("/profile", "Missing new password!")
        if new_password and confirmation:
            if new_password != confirmation:
                self.delete_profile_image(ctx)
                return Redirect("/profile", "New Passwords Must Match!")
            user = ctx.locals.get("user") or ctx.user
            user.set_password(new_password)
        return None

    def delete_profile_image(self, ctx: GuardContext) -> None:
        if ctx.upload is not None:
            self.images.delete(ctx.upload.public_id)


# --- flask binding ---------------------------------------------------------


def request_url() -> str:
    return request.full_path if request.query_string else request.path


def request_context(upload: Optional[UploadedImage] = None) -> GuardContext:
    return GuardContext(
        user=current_user,
        params=request.view_args or {},
        form=request.form,
        upload=upload,
        url=request_url(),
        referrer=request.referrer,
        locals=g.setdefault("locals", {}),
    )


def respond(directive: Directive):
    if isinstance(directive, NotFound):
        abort(404, description=directive.message)
    if directive.error:
        flash(directive.error, "error")
    if directive.remember:
        session["redirect_to"] = directive.remember
    return redirect(directive.location)


def run_guards(ctx: GuardContext, *checks: Callable[[GuardContext], Optional[Directive]]):
    for check in checks:
        directive = check(ctx)
        if directive is not None:
            return respond(directive)
    return None


def guarded(*names: str):
    """Run the named :class:`Guards` checks, in order, before the view."""

    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            guards: Guards = current_app.extensions["guards"]
            response = run_guards(request_context(), *(getattr(guards, name) for name in names))
            if response is not None:
                return response
            return view(*args, **kwargs)

        return wrapper

    return decorator
