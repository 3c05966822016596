"""
Structured-output chat model for the researcher's decide and evaluate steps.

Wraps a LangChain chat model with ``with_structured_output`` so every call
returns a payload shaped by a pydantic schema. Payloads are always
re-validated with ``parse_structured`` before use; a payload that does not
validate is reported as ``StructuredOutputError``.
"""

import json
from typing import Any, Optional, Sequence, Type, TypeVar

import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage
from pydantic import BaseModel, ValidationError

from libs.common.settings import Settings, get_settings
from researcher.errors import StructuredOutputError

logger = structlog.get_logger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class ChatStructuredModel:
    """Structured-output adapter over a LangChain chat model.

    The underlying model is created on first use so that importing and
    constructing the researcher never needs API credentials.
    """

    def __init__(self, llm: Optional[BaseChatModel] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._llm = llm

    def _get_llm(self) -> BaseChatModel:
        if self._llm is None:
            from langchain_openai import ChatOpenAI

            kwargs: dict = {
                "model": self.settings.model_id,
                "temperature": self.settings.model_temperature,
                "timeout": self.settings.model_timeout_seconds,
                "max_retries": 1,
            }
            if self.settings.openai_api_key:
                kwargs["api_key"] = self.settings.openai_api_key
            self._llm = ChatOpenAI(**kwargs)
            logger.info("Researcher chat model initialized", model=self.settings.model_id)
        return self._llm

    async def generate(
        self,
        schema: Type[BaseModel],
        messages: Sequence[BaseMessage],
        run_name: str,
    ) -> Any:
        """Invoke the model and return its (unvalidated) structured payload."""
        structured = self._get_llm().with_structured_output(schema)
        payload = await structured.ainvoke(
            list(messages),
            config={"run_name": run_name, "tags": ["researcher", run_name]},
        )
        if payload is None:
            raise StructuredOutputError(schema.__name__, "model returned no structured output")
        return payload


def parse_structured(schema: Type[SchemaT], payload: Any) -> SchemaT:
    """Validate a model payload against ``schema``.

    Accepts an instance of the schema, a mapping or a JSON string. Partially
    valid payloads are rejected as a whole.
    """
    try:
        if isinstance(payload, schema):
            return schema.model_validate(payload.model_dump())
        if isinstance(payload, (str, bytes)):
            return schema.model_validate_json(payload)
        if isinstance(payload, BaseModel):
            return schema.model_validate(payload.model_dump())
        return schema.model_validate(payload)
    except (ValidationError, json.JSONDecodeError, TypeError) as e:
        raise StructuredOutputError(schema.__name__, str(e)) from e
