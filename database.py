"""
MongoDB access for the order core.

`db` is None when DATABASE_URL / DATABASE_NAME are not configured; callers that need
persistence check for it and report the database as unavailable.
"""
import logging
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import DATABASE_URL, DATABASE_NAME

logger = logging.getLogger(__name__)


def connect(url: Optional[str] = DATABASE_URL, name: Optional[str] = DATABASE_NAME) -> Optional[Database]:
    if not url or not name:
        logger.warning("DATABASE_URL or DATABASE_NAME not set, running without a database")
        return None
    client = MongoClient(url, tz_aware=True)
    return client[name]


def ensure_indexes(database: Database) -> None:
    """Create the unique and lookup indexes the order core relies on."""
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("customer_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("payment_id", ASCENDING)])
    database["order"].create_index([("payment_status", ASCENDING), ("order_status", ASCENDING)])
    database["coupon"].create_index([("code", ASCENDING)], unique=True)
    database["product"].create_index([("sku", ASCENDING)], unique=True)


db = connect()
