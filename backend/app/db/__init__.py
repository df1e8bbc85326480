"""Database package for the backend."""

from backend.app.db.mongo import MongoDatabase

__all__ = ["MongoDatabase"]
