# Data factories for test data generation

from tests.support.factories.backend_factory import create_backend_row
from tests.support.factories.video_factory import (
    DEFAULT_TEST_LADDER,
    create_job,
    create_published_video,
    create_video,
    write_master_file,
)

__all__ = [
    # Storage backend factories
    "create_backend_row",
    # Video factories
    "DEFAULT_TEST_LADDER",
    "create_video",
    "create_job",
    "create_published_video",
    "write_master_file",
]
