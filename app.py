# =============================================================================
# Lambda Entry Module
# =============================================================================
# Handler strings:
#   app.lambda_handler   surface chosen by EVENTGATE_SURFACE (direct|proxy)
#   app.direct_handler   direct bus surface
#   app.proxy_handler    proxied compute surface
#
# The configuration snapshot is loaded on the first invocation and reused by
# every later invocation in the same sandbox.
# =============================================================================

import logging
import os
from typing import Any, Dict

from eventgate.app import direct_handler, proxy_handler
from eventgate.runtime.envelope import Surface

# ---------- Logger ----------
logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    surface = os.environ.get("EVENTGATE_SURFACE", Surface.DIRECT).lower()
    if surface == Surface.PROXY:
        return proxy_handler(event, context)
    return direct_handler(event, context)


__all__ = ["lambda_handler", "direct_handler", "proxy_handler"]
