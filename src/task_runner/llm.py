# llm.py
# Language model boundary.
#
# The engine only knows the LanguageModel protocol: complete(prompt, config)
# returning text plus optional token usage. OpenRouterModel is the shipped
# implementation, an OpenAI-compatible client pointed at OpenRouter.

import logging
from typing import Protocol, runtime_checkable

import openai
from dotenv import load_dotenv
from openai import AsyncOpenAI

from task_runner.config import ModelSettings
from task_runner.errors import ConfigurationError, ModelError
from task_runner.models import CompletionConfig, ModelResponse, TokenUsage
from task_runner.prompts import SYSTEM_PROMPT

load_dotenv()

logger = logging.getLogger(__name__)


@runtime_checkable
class LanguageModel(Protocol):
    async def complete(self, prompt: str, config: CompletionConfig) -> ModelResponse:
        """Return the model's reply. Raises ModelError on any transport failure."""
        ...


class OpenRouterModel:
    """
    Chat-completions client for OpenRouter.

    Example:
        model = OpenRouterModel(load_model_settings())
        reply = await model.complete("UNDERSTANDING: ...", CompletionConfig())
    """

    def __init__(self, settings: ModelSettings | None = None, system_prompt: str = SYSTEM_PROMPT) -> None:
        settings = settings or ModelSettings()
        if not settings.api_key:
            raise ConfigurationError("OPENROUTER_API_KEY is not set; cannot construct the language model.")
        self._model = settings.model
        self._system_prompt = system_prompt
        self._client = AsyncOpenAI(base_url=settings.base_url, api_key=settings.api_key)

    @property
    def name(self) -> str:
        return self._model

    async def complete(self, prompt: str, config: CompletionConfig) -> ModelResponse:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": self._system_prompt},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=config.max_tokens,
                temperature=config.temperature,
            )
        except openai.APIError as exc:
            raise ModelError(f"{self._model}: {exc}") from exc

        if not response.choices or not response.choices[0].message.content:
            raise ModelError(f"{self._model} returned an empty completion")

        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )
            logger.debug("%s used %d tokens", self._model, usage.total_tokens)
        return ModelResponse(content=response.choices[0].message.content.strip(), usage=usage)
