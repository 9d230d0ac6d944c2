# =============================================================================
# Application Entry Points
# =============================================================================
# Thin transport adapters that parse events and run the pipeline.
# =============================================================================

from eventgate.app.api_handler import proxy_handler
from eventgate.app.direct_handler import direct_handler
from eventgate.app.pipeline import Pipeline, build_pipeline, get_pipeline, reset_pipeline

__all__ = [
    "proxy_handler",
    "direct_handler",
    "Pipeline",
    "build_pipeline",
    "get_pipeline",
    "reset_pipeline",
]
