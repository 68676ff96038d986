"""
Option presets by data category.
"""
from enum import Enum
from typing import Any, Dict

from .options import QueryOptions


class DataCategory(Enum):
    """Categories of data with different caching behaviors."""
    REALTIME = "realtime"     # seconds, polled, no stale serving
    VOLATILE = "volatile"     # under a minute
    STANDARD = "standard"     # minutes, refreshed on focus
    STABLE = "stable"         # hours, kept long after use


# Preset configuration by category (in seconds)
PRESET_CONFIG: Dict[DataCategory, Dict[str, Any]] = {
    DataCategory.REALTIME: {
        "stale_time": 0,            # Always refetch on bind
        "cache_time": 30,           # Drop quickly once nobody watches
        "refetch_interval": 5,      # Poll every 5 seconds
        "refetch_on_focus": True,
        "retry": 1,
        "retry_delay": 0.5,
    },
    DataCategory.VOLATILE: {
        "stale_time": 30,           # 30 seconds
        "cache_time": 120,          # 2 minutes
        "refetch_on_focus": True,
    },
    DataCategory.STANDARD: {
        "stale_time": 300,          # 5 minutes
        "cache_time": 900,          # 15 minutes
        "refetch_on_focus": True,
    },
    DataCategory.STABLE: {
        "stale_time": 21600,        # 6 hours
        "cache_time": 86400,        # 24 hours
        "refetch_on_focus": False,
        "refetch_on_reconnect": False,
    },
}


def get_options_for_category(category: DataCategory, **overrides: Any) -> QueryOptions:
    """
    Get query options for a data category.

    Args:
        category: The data category
        **overrides: Option fields that take precedence over the preset

    Returns:
        QueryOptions for the category
    """
    config = dict(PRESET_CONFIG.get(category, PRESET_CONFIG[DataCategory.VOLATILE]))
    config.update(overrides)
    return QueryOptions(**config)
