# =============================================================================
# Proxy Handler
# =============================================================================
# Entry point for the proxied compute surface (POST /{resource-path}).
# Authorized requests are forwarded verbatim to the bound consumer and its
# response is returned unchanged.
# =============================================================================

import logging
from typing import Any, Dict

from eventgate.app.pipeline import get_pipeline
from eventgate.runtime.envelope import Surface

logger = logging.getLogger(__name__)


def proxy_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Proxied compute entry point.

    Handles:
    - HTTP API (v2) requests
    - REST API (v1) requests
    """
    logger.info(f"PROXY_HANDLER event keys: {list(event.keys())}")

    pipeline = get_pipeline()
    response = pipeline.handle(event, Surface.PROXY)
    try:
        pipeline.flush_metrics()
    except Exception as e:
        logger.exception(f"Metrics flush failed: {e}")
    return response
