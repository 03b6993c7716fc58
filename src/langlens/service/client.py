import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from langgraph_sdk import get_client
from langgraph_sdk.client import LangGraphClient

from langlens.config import LangLensConfig

logger = logging.getLogger(__name__)

#########################################################################
## LangGraph client #####################################################
#########################################################################

HEALTH_CHECK_TIMEOUT = 5.0


def create_client(config: LangLensConfig) -> LangGraphClient:
    """Build the async LangGraph API client for the configured server."""
    return get_client(url=config.api_url, timeout=config.timeout)


async def check_api_health(api_url: str, timeout: float = HEALTH_CHECK_TIMEOUT) -> bool:
    """Return True if the API server answers at all (404 counts as up)."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.head(api_url)
    except httpx.HTTPError as exc:
        logger.error("API health check failed: %s", exc)
        return False
    return response.is_success or response.status_code == 404


def log_api_error(
    operation: str,
    error: BaseException,
    context: Optional[dict[str, Any]] = None,
) -> None:
    """Log a failed API operation with its context."""
    logger.error(
        "[API Error] %s failed: %s (context=%s, timestamp=%s)",
        operation,
        error,
        context or {},
        datetime.now(timezone.utc).isoformat(),
    )
