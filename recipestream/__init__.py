"""Recipe video ingest, transcode and secure delivery core.

This package ingests uploaded recipe videos, transcodes them into HLS
adaptive-bitrate renditions on a pool of async workers, stores objects across
interchangeable S3-compatible backends, and grants time-limited signed access
for CDN-fronted playback.
"""

from recipestream.database import async_session_factory, get_session
from recipestream.models import Base, RecipeVideo, TranscodeJob

__all__ = [
    "Base",
    "RecipeVideo",
    "TranscodeJob",
    "async_session_factory",
    "get_session",
]
