"""
Shared fixtures: an in-memory MongoDB (mongomock), a scratch uploads
directory and a TestClient wired to both.
"""

import os
import shutil
import tempfile

# Must be set before main is imported, it mounts the uploads directory
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="auction-uploads-")

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import config
from database import get_db
from main import app


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient()["auction_app_test"]


@pytest.fixture
def upload_dir():
    """The configured uploads directory, emptied after each test."""
    yield config.UPLOAD_DIR
    if os.path.isdir(config.UPLOAD_DIR):
        for name in os.listdir(config.UPLOAD_DIR):
            os.remove(os.path.join(config.UPLOAD_DIR, name))


@pytest.fixture
def client(mongo_db, upload_dir):
    app.dependency_overrides[get_db] = lambda: mongo_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auction_id(mongo_db):
    result = mongo_db["auction"].insert_one({"title": "Estate sale", "status": "live"})
    return str(result.inserted_id)


@pytest.fixture
def bid_form(auction_id):
    return {
        "auctionId": auction_id,
        "bidderId": str(ObjectId()),
        "itemName": "Oak writing desk",
        "itemDescription": "Solid oak, three drawers, minor scratches on top.",
    }


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(config.UPLOAD_DIR, ignore_errors=True)
