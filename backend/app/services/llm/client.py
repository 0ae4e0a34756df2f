"""
Bounded LLM access: prompt in, validated JSON out, within a time budget.

Every model call in the pipeline goes through ``LLMService.complete_json`` so
that timeouts and malformed replies surface as the same two typed errors.
"""
import asyncio
from typing import Optional, Type, TypeVar

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, ValidationError

from app.core.exceptions import ExtractionTimeout, LLMResponseError
from app.core.langfuse_handler import trace_callbacks
from app.core.logging import get_logger
from app.orchestration.utils import extract_json_from_llm_response

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class LLMService:
    """Wraps a langchain chat model with JSON parsing and timeouts."""

    def __init__(self, llm: Optional[BaseChatModel] = None):
        self._llm = llm

    @property
    def llm(self) -> BaseChatModel:
        if self._llm is None:
            from app.orchestration.routing import get_llm
            self._llm = get_llm()
        return self._llm

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: Type[M],
        timeout: float,
        operation: str = "llm",
        org_id: Optional[str] = None,
    ) -> M:
        """
        Ask the model for a JSON object matching ``schema``.

        Raises:
            ExtractionTimeout: no reply within ``timeout`` seconds
            LLMResponseError: the call failed or the reply did not validate
        """
        config = {}
        callbacks = trace_callbacks(operation, org_id=org_id, schema=schema.__name__)
        if callbacks:
            config["callbacks"] = callbacks

        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
        try:
            response = await asyncio.wait_for(
                self.llm.ainvoke(messages, config=config),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"LLM call for {schema.__name__} timed out after {timeout}s")
            raise ExtractionTimeout(f"Model did not respond within {timeout} seconds")
        except Exception as e:
            logger.error(f"LLM call for {schema.__name__} failed: {e}")
            raise LLMResponseError("Language model call failed", original_error=e)

        content = response.content if isinstance(response.content, str) else str(response.content)
        data = extract_json_from_llm_response(content)
        if data is None:
            logger.warning(f"LLM reply for {schema.__name__} contained no JSON object")
            raise LLMResponseError("Model reply was not valid JSON")

        try:
            return schema.model_validate(data)
        except ValidationError as e:
            logger.warning(f"LLM reply for {schema.__name__} failed validation: {e}")
            raise LLMResponseError("Model reply did not match the expected shape", original_error=e)


_llm_service: Optional[LLMService] = None


def get_llm_service() -> LLMService:
    """Get or create LLM service singleton."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
