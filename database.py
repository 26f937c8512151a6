from typing import Optional

from pymongo import MongoClient

import config

_client: Optional[MongoClient] = None


def get_db():
    """Return the campaign database, connecting on first use."""
    global _client
    if _client is None:
        if not config.DATABASE_URL:
            from engine.errors import CampaignConfigError
            raise CampaignConfigError("DATABASE_URL not set (required for STATE_BACKEND=mongo)")
        _client = MongoClient(config.DATABASE_URL)
    return _client.get_database()


def state_collection():
    return get_db()["campaign_state"]


def thread_records_collection():
    coll = get_db()["thread_records"]
    coll.create_index([("campaign_id", 1), ("seq", 1)], unique=True)
    return coll
