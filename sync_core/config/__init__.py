# =============================================================================
# sync_core/config/__init__.py
# Engine Configuration
# =============================================================================

from .settings import (
    CategoryConfig,
    EngineConfig,
    default_categories,
    load_config,
    parse_duration,
)

__all__ = [
    "CategoryConfig",
    "EngineConfig",
    "default_categories",
    "load_config",
    "parse_duration",
]
