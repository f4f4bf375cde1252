"""
Database connection

MongoDB connection shared by the repositories. The connection is optional:
when DATABASE_URL / DATABASE_NAME are not set, `db` is None, the health
check reports it and the API answers 503.
"""

from pymongo import MongoClient

from config import settings

_client = None
db = None

if settings.database_url and settings.database_name:
    _client = MongoClient(settings.database_url)
    db = _client[settings.database_name]
