"""
LangFuse tracing for the bounded model calls.

Each call opens its own trace named after the pipeline operation (slot
extraction, duplicate scoring) so latency and fallbacks can be compared per
operation. Tracing is off when no LangFuse key is configured.
"""
from typing import Any, Dict, List, Optional

from langfuse import Langfuse

from app.core.config import settings
from app.core.logging import logger

TRACE_PREFIX = "triagebot"

_client: Optional[Langfuse] = None
_disabled = False


def get_langfuse_client() -> Optional[Langfuse]:
    """Shared LangFuse client, or None when tracing is not configured."""
    global _client, _disabled

    if _disabled or not settings.LANGFUSE_PUBLIC_KEY:
        return None

    if _client is None:
        try:
            _client = Langfuse(
                public_key=settings.LANGFUSE_PUBLIC_KEY,
                secret_key=settings.LANGFUSE_SECRET_KEY,
                host=settings.LANGFUSE_HOST,
            )
            logger.info("LangFuse tracing enabled")
        except Exception as e:
            _disabled = True
            logger.warning(f"LangFuse unavailable, model calls will not be traced: {e}")
            return None

    return _client


def trace_callbacks(operation: str, **metadata: Any) -> List[Any]:
    """LangChain callbacks that record one model call under a named trace."""
    client = get_langfuse_client()
    if client is None:
        return []

    tags = [operation]
    org_id = metadata.get("org_id")
    if org_id:
        tags.append(f"org:{org_id}")
    try:
        trace = client.trace(
            name=f"{TRACE_PREFIX}.{operation}",
            tags=tags,
            metadata=_clean(metadata),
        )
        return [trace.get_langchain_handler()]
    except Exception as e:
        logger.warning(f"Could not open LangFuse trace for {operation}: {e}")
        return []


def flush_langfuse():
    """Send buffered traces before shutdown."""
    if _client is not None:
        try:
            _client.flush()
        except Exception as e:
            logger.warning(f"Failed to flush LangFuse: {e}")


def _clean(metadata: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in metadata.items() if v is not None}
