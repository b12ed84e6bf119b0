"""Common utilities for DataLane PDF."""

from common.utils import utc_now

__all__ = [
    "utc_now",
]
