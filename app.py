from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import (
    Blueprint,
    Flask,
    abort,
    current_app,
    flash,
    g,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from flask_login import LoginManager, current_user, login_user, logout_user
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import Config
from exceptions import ExternalServiceError, UploadRejected
from geocoding import GeocodingClient
from mailer import send_password_reset
from media import ImageStorage, UploadedImage
from middleware import (
    Guards,
    SearchQuery,
    countable_query,
    guarded,
    request_context,
    request_url,
    run_guards,
    search_and_filter_posts,
)
from models import Post, Review, User, ensure_indexes

bp = Blueprint("main", __name__)

login_manager = LoginManager()
login_manager.login_view = "main.login"


@login_manager.user_loader
def load_user(user_id: str) -> Optional[User]:
    return User.get(user_id)


def get_config() -> Config:
    return current_app.extensions["surf_shop_config"]


def get_images() -> ImageStorage:
    return current_app.extensions["images"]


def get_geocoder() -> GeocodingClient:
    return current_app.extensions["geocoder"]


def get_guards() -> Guards:
    return current_app.extensions["guards"]


def parse_price(raw: Optional[str]) -> Optional[float]:
    try:
        price = float(raw)
    except (TypeError, ValueError):
        return None
    return price if price >= 0 else None


def parse_rating(raw: Optional[str]) -> Optional[int]:
    try:
        rating = int(raw)
    except (TypeError, ValueError):
        return None
    return rating if 1 <= rating <= 5 else None


def back(default: str = "/") -> str:
    return request.referrer or default


@bp.app_context_processor
def inject_globals() -> Dict[str, Any]:
    return {"current_year": datetime.utcnow().year}


# --- landing & account ----------------------------------------------------


@bp.route("/")
def landing():
    return render_template("index.html", posts=Post.latest(3))


@bp.route("/register", methods=["GET", "POST"])
def register():
    if current_user.is_authenticated:
        return redirect(url_for("main.landing"))
    if request.method == "POST":
        username = request.form.get("username", "").strip()
        email = request.form.get("email", "").strip()
        password = request.form.get("password", "")
        if not username or not email or not password:
            flash("Username, email and password are required", "error")
            return render_template("register.html", username=username, email=email)
        image_file = request.files.get("image")
        upload = get_images().upload(image_file) if image_file and image_file.filename else None
        image = {"secure_url": upload.secure_url, "public_id": upload.public_id} if upload else None
        try:
            user = User.register(username, email, password, image=image)
        except DuplicateKeyError:
            if upload:
                get_images().delete(upload.public_id)
            flash("A user with the given username or email is already registered", "error")
            return render_template("register.html", username=username, email=email)
        login_user(user)
        flash(f"Welcome to Surf Shop, {user.username}!", "success")
        return redirect(url_for("main.landing"))
    return render_template("register.html")


@bp.route("/login", methods=["GET", "POST"])
def login():
    if current_user.is_authenticated:
        return redirect(url_for("main.landing"))
    if request.method == "POST":
        username = request.form.get("username", "").strip()
        password = request.form.get("password", "")
        user = User.authenticate(username, password)
        if user:
            login_user(user)
            flash(f"Welcome back, {user.username}!", "success")
            return redirect(session.pop("redirect_to", None) or url_for("main.landing"))
        flash("Incorrect username or password!", "error")
    return render_template("login.html")


@bp.route("/logout")
def logout():
    logout_user()
    flash("You have been logged out", "info")
    return redirect(url_for("main.landing"))


@bp.route("/profile")
@guarded("is_logged_in")
def profile():
    posts = Post.by_author(current_user.mongo_id)
    return render_template("profile.html", posts=posts)


@bp.route("/profile", methods=["POST"])
@guarded("is_logged_in")
def update_profile():
    image_file = request.files.get("image")
    upload = get_images().upload(image_file) if image_file and image_file.filename else None
    ctx = request_context(upload=upload)
    guards = get_guards()
    response = run_guards(ctx, guards.is_valid_password, guards.change_password)
    if response is not None:
        return response

    user: User = ctx.locals["user"]
    old_public_id = user.image_public_id
    updates: Dict[str, Any] = {}
    username = request.form.get("username", "").strip()
    email = request.form.get("email", "").strip()
    if username and username != user.username:
        updates["username"] = username
    if email and User.normalize_email(email) != user.email_lower:
        updates["email"] = email
        updates["email_lower"] = User.normalize_email(email)
    if request.form.get("newPassword"):
        updates["password_hash"] = user.password_hash
    if upload:
        updates["image"] = {"secure_url": upload.secure_url, "public_id": upload.public_id}
    if updates:
        try:
            user.update(updates)
        except DuplicateKeyError:
            guards.delete_profile_image(ctx)
            flash("That username or email is already taken", "error")
            return redirect(url_for("main.profile"))
        if upload and old_public_id:
            get_images().delete(old_public_id)
    login_user(user)
    flash("Profile successfully updated!", "success")
    return redirect(url_for("main.profile"))


@bp.route("/forgot-password", methods=["GET", "POST"])
def forgot_password():
    if request.method == "POST":
        email = request.form.get("email", "").strip()
        user = User.get_by_email(email)
        if not user:
            flash("No account with that email.", "error")
            return redirect(url_for("main.forgot_password"))
        token = user.start_password_reset()
        link = url_for("main.reset_password", token=token, _external=True)
        send_password_reset(get_config(), user.email, link)
        flash(f"An email has been sent to {user.email} with further instructions.", "success")
        return redirect(url_for("main.forgot_password"))
    return render_template("users/forgot.html")


@bp.route("/reset/<token>", methods=["GET", "POST"])
def reset_password(token: str):
    user = User.get_by_reset_token(token)
    if not user:
        flash("Password reset token is invalid or has expired.", "error")
        return redirect(url_for("main.forgot_password"))
    if request.method == "POST":
        password = request.form.get("password", "")
        confirm = request.form.get("confirm", "")
        if not password or password != confirm:
            flash("Passwords do not match.", "error")
            return redirect(url_for("main.reset_password", token=token))
        user.finish_password_reset(password)
        login_user(user)
        flash("Password successfully updated!", "success")
        return redirect(url_for("main.landing"))
    return render_template("users/reset.html", token=token)


# --- posts ------------------------------------------------------------------


@bp.route("/posts")
def posts_index():
    query = SearchQuery.from_args(request.args)
    result = search_and_filter_posts(query, request_url(), get_geocoder())
    page = Post.paginate(
        result.db_query,
        countable_query(result.db_query),
        query.page,
        current_app.config["POSTS_PER_PAGE"],
    )
    if not page.items and query.keys:
        flash("No results match that query.", "error")
    return render_template(
        "posts/index.html",
        posts=page,
        query=result.query,
        paginate_url=result.paginate_url,
    )


@bp.route("/posts/new")
@guarded("is_logged_in")
def posts_new():
    return render_template("posts/new.html")


def _upload_post_images() -> List[UploadedImage]:
    return get_images().upload_many(request.files.getlist("images"))


def _resolve_location(location: str, uploaded: List[UploadedImage]) -> List[float]:
    try:
        return get_geocoder().resolve(location)
    except ExternalServiceError:
        for image in uploaded:
            get_images().delete(image.public_id)
        raise


@bp.route("/posts", methods=["POST"])
@guarded("is_logged_in")
def posts_create():
    title = request.form.get("title", "").strip()
    description = request.form.get("description", "").strip()
    location = request.form.get("location", "").strip()
    price = parse_price(request.form.get("price"))
    if not title or not location or price is None:
        flash("Title, price and location are required", "error")
        return redirect(url_for("main.posts_new"))
    uploaded = _upload_post_images()
    coordinates = _resolve_location(location, uploaded)
    post = Post.create(
        author_id=current_user.mongo_id,
        title=title,
        description=description,
        price=price,
        location=location,
        coordinates=coordinates,
        images=[image.to_doc() for image in uploaded],
    )
    current_app.logger.info("Post created id=%s author=%s", post.id, current_user.id)
    flash("Post created successfully!", "success")
    return redirect(url_for("main.posts_show", id=post.id))


@bp.route("/posts/<string:id>")
def posts_show(id: str):
    post = Post.get(id)
    if not post:
        abort(404, description="Post not found")
    post.author_user = User.get(post.author)
    reviews = Review.for_post(post.mongo_id)
    return render_template("posts/show.html", post=post, reviews=reviews)


@bp.route("/posts/<string:id>/edit")
@guarded("is_logged_in", "is_author")
def posts_edit(id: str):
    return render_template("posts/edit.html", post=g.locals["post"])


@bp.route("/posts/<string:id>", methods=["POST"])
@guarded("is_logged_in", "is_author")
def posts_update(id: str):
    post: Post = g.locals["post"]
    images = get_images()
    updates: Dict[str, Any] = {}

    title = request.form.get("title", "").strip()
    description = request.form.get("description", "").strip()
    location = request.form.get("location", "").strip()
    raw_price = request.form.get("price")
    if title:
        updates["title"] = title
    if description:
        updates["description"] = description
    if raw_price not in (None, ""):
        price = parse_price(raw_price)
        if price is None:
            flash("Price must be a positive number", "error")
            return redirect(url_for("main.posts_edit", id=id))
        updates["price"] = price

    owned = {image.get("public_id") for image in post.image_list}
    to_delete = set(request.form.getlist("deleteImages")) & owned
    remaining = [image for image in post.image_list if image.get("public_id") not in to_delete]
    if to_delete:
        updates["images"] = remaining

    uploaded = _upload_post_images()
    if uploaded:
        updates["images"] = remaining + [image.to_doc() for image in uploaded]

    if location and location != post.location:
        coordinates = _resolve_location(location, uploaded)
        updates["location"] = location
        updates["geometry"] = {"type": "Point", "coordinates": coordinates}

    if updates:
        post.update(updates)
    for public_id in to_delete:
        images.delete(public_id)
    flash("Post updated successfully!", "success")
    return redirect(url_for("main.posts_show", id=id))


@bp.route("/posts/<string:id>/delete", methods=["POST"])
@guarded("is_logged_in", "is_author")
def posts_destroy(id: str):
    post: Post = g.locals["post"]
    for image in post.image_list:
        get_images().delete(image.get("public_id"))
    Review.collection().delete_many({"post": post.mongo_id})
    post.delete()
    current_app.logger.info("Post deleted id=%s", id)
    flash("Post deleted successfully!", "success")
    return redirect(url_for("main.posts_index"))


# --- reviews ------------------------------------------------------------------


@bp.route("/posts/<string:id>/reviews", methods=["POST"])
@guarded("is_logged_in")
def reviews_create(id: str):
    post = Post.get(id)
    if not post:
        abort(404, description="Post not found")
    if Review.exists_for(current_user.mongo_id, post.mongo_id):
        flash("Sorry, you can only create one review per post.", "error")
        return redirect(url_for("main.posts_show", id=id))
    rating = parse_rating(request.form.get("rating"))
    if rating is None:
        flash("Rating must be between 1 and 5", "error")
        return redirect(url_for("main.posts_show", id=id))
    review = Review.create(current_user.mongo_id, post.mongo_id, rating, request.form.get("body", "").strip())
    post.add_review(review)
    flash("Review created successfully!", "success")
    return redirect(url_for("main.posts_show", id=id))


@bp.route("/posts/<string:id>/reviews/<string:review_id>", methods=["POST"])
@guarded("is_logged_in", "is_review_author")
def reviews_update(id: str, review_id: str):
    review: Review = g.locals["review"]
    rating = parse_rating(request.form.get("rating"))
    if rating is None:
        flash("Rating must be between 1 and 5", "error")
        return redirect(url_for("main.posts_show", id=id))
    review.update({"rating": rating, "body": request.form.get("body", "").strip()})
    post = Post.get(review.post)
    if post:
        post.recalculate_rating()
    flash("Review updated successfully!", "success")
    return redirect(url_for("main.posts_show", id=id))


@bp.route("/posts/<string:id>/reviews/<string:review_id>/delete", methods=["POST"])
@guarded("is_logged_in", "is_review_author")
def reviews_destroy(id: str, review_id: str):
    review: Review = g.locals["review"]
    review.delete()
    post = Post.get(review.post)
    if post:
        post.remove_review(review)
    flash("Review deleted successfully!", "success")
    return redirect(url_for("main.posts_show", id=id))


# --- errors -------------------------------------------------------------------


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ExternalServiceError)
    def external_service_error(exc: ExternalServiceError):
        app.logger.exception("%s failure: %s", exc.service, exc)
        flash("Something went wrong, please try again.", "error")
        return redirect(back())

    @app.errorhandler(UploadRejected)
    def upload_rejected(exc: UploadRejected):
        flash(str(exc), "error")
        return redirect(back())

    @app.errorhandler(404)
    def not_found(exc):
        return render_template("404.html", message=getattr(exc, "description", None)), 404


def create_app(
    config: Optional[Config] = None,
    db: Optional[Database] = None,
    images: Optional[ImageStorage] = None,
    geocoder: Optional[GeocodingClient] = None,
) -> Flask:
    config = config or Config.from_env()
    app = Flask(__name__)
    app.config.from_mapping(config.flask_settings())

    if db is None:
        mongo_client = MongoClient(config.mongodb_uri)
        db = mongo_client[config.mongodb_db_name]
        try:
            ensure_indexes(db)
        except PyMongoError as exc:
            app.logger.warning("Unable to prepare MongoDB collections: %s", exc)

    images = images or ImageStorage(config)
    app.extensions["surf_shop_config"] = config
    app.extensions["mongo_db"] = db
    app.extensions["images"] = images
    app.extensions["geocoder"] = geocoder or GeocodingClient(config)
    app.extensions["guards"] = Guards(users=User, posts=Post, reviews=Review, images=images)

    login_manager.init_app(app)
    app.register_blueprint(bp)
    register_error_handlers(app)
    return app


if __name__ == "__main__":
    create_app().run(debug=True, host="0.0.0.0", port=5000)
