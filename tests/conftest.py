"""
Shared fixtures: an in-memory stand-in for the MongoDB collections the views
touch, plus mocked image storage and geocoder so no test reaches the network.
"""

import copy
from unittest.mock import Mock

import pytest
from bson import ObjectId

from app import create_app
from config import Config
from geocoding import GeocodingClient
from media import ImageStorage, UploadedImage
from models import User


def _matches(doc, query):
    for key, expected in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in expected):
                return False
            continue
        if key == "$and":
            if not all(_matches(doc, sub) for sub in expected):
                return False
            continue
        actual = doc.get(key)
        if isinstance(expected, dict):
            for op, value in expected.items():
                if op == "$in" and actual not in value:
                    return False
                if op == "$gt" and (actual is None or not actual > value):
                    return False
                if op == "$gte" and (actual is None or not actual >= value):
                    return False
                if op == "$lte" and (actual is None or not actual <= value):
                    return False
        elif actual != expected:
            return False
    return True


class FakeCursor:
    def __init__(self, docs):
        self._docs = list(docs)

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return self

    def skip(self, count):
        self._docs = self._docs[count:]
        return self

    def limit(self, count):
        if count:
            self._docs = self._docs[:count]
        return self

    def __iter__(self):
        return iter(self._docs)


class FakeCollection:
    def __init__(self):
        self.docs = []

    def find_one(self, query=None):
        for doc in self.docs:
            if _matches(doc, query or {}):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None, projection=None):
        return FakeCursor(copy.deepcopy(d) for d in self.docs if _matches(d, query or {}))

    def count_documents(self, query, limit=None):
        count = sum(1 for d in self.docs if _matches(d, query))
        return min(count, limit) if limit else count

    def insert_one(self, doc):
        doc.setdefault("_id", ObjectId())
        self.docs.append(copy.deepcopy(doc))
        return Mock(inserted_id=doc["_id"])

    def update_one(self, query, update):
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(copy.deepcopy(update.get("$set", {})))
                for key in update.get("$unset", {}):
                    doc.pop(key, None)
                for key, value in update.get("$push", {}).items():
                    doc.setdefault(key, []).append(value)
                for key, value in update.get("$pull", {}).items():
                    doc[key] = [v for v in doc.get(key, []) if v != value]
                return Mock(matched_count=1)
        return Mock(matched_count=0)

    def delete_one(self, query):
        for doc in list(self.docs):
            if _matches(doc, query):
                self.docs.remove(doc)
                return Mock(deleted_count=1)
        return Mock(deleted_count=0)

    def delete_many(self, query):
        before = len(self.docs)
        self.docs = [d for d in self.docs if not _matches(d, query)]
        return Mock(deleted_count=before - len(self.docs))


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        return self._collections.setdefault(name, FakeCollection())

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


@pytest.fixture
def config():
    return Config(
        secret_key="test-secret",
        mapbox_token="test-token",
        cloudinary_cloud_name="demo",
        cloudinary_api_key="key",
        cloudinary_secret="secret",
        testing=True,
    )


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def images():
    storage = Mock(spec=ImageStorage)
    storage.upload.return_value = UploadedImage("https://res.cloudinary.com/demo/new.jpg", "surf-shop/new")
    storage.upload_many.return_value = []
    return storage


@pytest.fixture
def geocoder():
    client = Mock(spec=GeocodingClient)
    client.resolve.return_value = [-117.9, 33.6]
    client.forward_geocode.return_value = [-117.9, 33.6]
    return client


@pytest.fixture
def app(config, db, images, geocoder):
    return create_app(config=config, db=db, images=images, geocoder=geocoder)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def factory(username="bob", email=None, password="secret123"):
        with app.app_context():
            return User.register(username, email or f"{username}@example.com", password)

    return factory


@pytest.fixture
def login(client):
    def do_login(user):
        with client.session_transaction() as sess:
            sess["_user_id"] = user.id
            sess["_fresh"] = True

    return do_login


@pytest.fixture
def flashed(client):
    def read():
        with client.session_transaction() as sess:
            return [message for _category, message in sess.get("_flashes", [])]

    return read
