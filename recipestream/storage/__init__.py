"""Object store adapter over interchangeable S3-compatible backends."""

from recipestream.storage.adapter import ObjectHeaders, ObjectStoreAdapter
from recipestream.storage.backends import S3Backend
from recipestream.storage.registry import BackendRegistry

__all__ = [
    "BackendRegistry",
    "ObjectHeaders",
    "ObjectStoreAdapter",
    "S3Backend",
]
