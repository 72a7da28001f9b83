#!/usr/bin/env python3
"""Database management helpers for the Surf Shop app (MongoDB).

Usage: python db_manager.py <command>

Commands:
  init_db       - Create the collection indexes (unique email/username, 2dsphere geometry)
  list_users    - List all users in the database
  create_user   - Create a new user (interactive)
  delete_user   - Delete a user, their posts, reviews and uploaded images
  reset_db      - Delete user-generated collections (users, posts, reviews)
"""

from __future__ import annotations

import sys
from datetime import datetime
from getpass import getpass

from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from app import create_app
from models import Post, Review, User, ensure_indexes, get_db


def init_db() -> None:
    ensure_indexes(get_db())
    print("Indexes created.")


def list_users() -> None:
    """List all users with their key attributes."""
    db = get_db()
    users = list(db.users.find().sort("created_at", ASCENDING))
    if not users:
        print("No users found in MongoDB.")
        return
    print(f"\n{'ID':<25} {'Email':<30} {'Username':<20} {'Posts':<6} {'Created'}")
    print("-" * 95)
    for doc in users:
        created = doc.get("created_at")
        created_str = created.strftime("%Y-%m-%d %H:%M") if isinstance(created, datetime) else "n/a"
        post_count = db.posts.count_documents({"author": doc.get("_id")})
        print(
            f"{str(doc.get('_id')):<25} "
            f"{doc.get('email', '-'):<30} "
            f"{doc.get('username', '-'):<20} "
            f"{post_count:<6} "
            f"{created_str}"
        )
    print(f"\nTotal users: {len(users)}")


def create_user() -> None:
    """Create a new user interactively."""
    print("\n--- Create New User ---")
    username = input("Username: ").strip()
    email = input("Email: ").strip()
    password = getpass("Password: ").strip()

    if not username or not email or not password:
        print("Error: username, email, and password are required.")
        return
    if User.get_by_email(email) or User.get_by_username(username):
        print(f"Error: user {username!r} / {email!r} already exists.")
        return

    try:
        user = User.register(username, email, password)
    except DuplicateKeyError:
        print(f"Error: user {username!r} / {email!r} already exists.")
        return

    print(f"Success: created user {username!r} with id {user.id}")


def delete_user(images) -> None:
    """Delete a user by email, with everything they authored."""
    email = input("Enter email of user to delete: ").strip()
    if not email:
        print("Email is required.")
        return
    user = User.get_by_email(email)
    if not user:
        print(f"Error: No user found with email {email!r}.")
        return
    confirm = input(f"Are you sure you want to delete {user.username} ({email})? [y/N]: ")
    if confirm.lower() != "y":
        print("Deletion cancelled.")
        return
    posts = [Post(doc) for doc in Post.collection().find({"author": user.mongo_id})]
    for post in posts:
        for image in post.image_list:
            images.delete(image.get("public_id"))
    post_ids = [post.mongo_id for post in posts]
    Review.collection().delete_many({"$or": [{"author": user.mongo_id}, {"post": {"$in": post_ids}}]})
    Post.collection().delete_many({"author": user.mongo_id})
    images.delete(user.image_public_id)
    user.delete()
    # ratings on other users' posts may have lost a review
    for doc in Post.collection().find({}, {"_id": 1}):
        Post(doc).recalculate_rating()
    print("User and related data deleted.")


def reset_db() -> None:
    """Reset user-generated collections (drops users, posts, and reviews)."""
    confirm = input("This will DELETE all users, posts, and reviews. Continue? [y/N]: ")
    if confirm.lower() != "y":
        print("Reset cancelled.")
        return
    db = get_db()
    db.users.delete_many({})
    db.posts.delete_many({})
    db.reviews.delete_many({})
    ensure_indexes(db)
    print("Database reset. Indexes were re-created.")


def show_help() -> None:
    print(__doc__)


def main() -> None:
    if len(sys.argv) < 2:
        show_help()
        return
    command = sys.argv[1].lower()
    app = create_app()
    commands = {
        "init_db": init_db,
        "list_users": list_users,
        "create_user": create_user,
        "delete_user": lambda: delete_user(app.extensions["images"]),
        "reset_db": reset_db,
        "help": show_help,
    }
    handler = commands.get(command)
    if not handler:
        print(f"Unknown command: {command}")
        show_help()
        return
    with app.app_context():
        handler()


if __name__ == "__main__":
    main()
