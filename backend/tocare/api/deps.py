import logging

from fastapi import HTTPException

from tocare.agent.llm import LLMClient
from tocare.errors import (
    InvalidStateError,
    LLMError,
    NotFoundError,
    ProtocolConfigurationError,
)

logger = logging.getLogger(__name__)

_llm: LLMClient | None = None


def get_llm() -> LLMClient:
    global _llm
    if _llm is None:
        _llm = LLMClient()
    return _llm


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidStateError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ProtocolConfigurationError):
        logger.error("Protocol configuration error: %s", exc)
        return HTTPException(status_code=500, detail=str(exc))
    if isinstance(exc, LLMError):
        logger.error("Model call failed: %s", exc)
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    logger.exception("Unhandled error", exc_info=exc)
    return HTTPException(status_code=500, detail="Internal server error")
