# =============================================================================
# Direct Bus Handler
# =============================================================================
# Entry point for the direct bus surface (POST /). Admitted requests become
# Events that fan out to consumers in the background; the caller only ever
# sees a generic acknowledgement.
# =============================================================================

import logging
from typing import Any, Dict

from eventgate.app.pipeline import get_pipeline
from eventgate.runtime.envelope import Surface

logger = logging.getLogger(__name__)


def direct_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Direct bus entry point.

    Args:
        event: API Gateway event
        context: Lambda context

    Returns:
        API Gateway response format
    """
    logger.info(f"DIRECT_HANDLER event keys: {list(event.keys())}")

    pipeline = get_pipeline()
    response = pipeline.handle(event, Surface.DIRECT)

    # response is already final; finish handing events over before the sandbox freezes
    try:
        remaining = pipeline.dispatcher.drain(timeout=_remaining_seconds(context))
        if remaining:
            logger.warning(f"{remaining} dispatches still pending at handler exit")
        pipeline.flush_metrics()
    except Exception as e:
        logger.exception(f"Post-response work failed: {e}")
    return response


def _remaining_seconds(context: Any) -> float:
    get_remaining = getattr(context, "get_remaining_time_in_millis", None)
    if get_remaining is None:
        return 10.0
    try:
        return max(float(get_remaining()) / 1000.0 - 1.0, 0.0)
    except (TypeError, ValueError):
        return 10.0
