# src/taskmaster_sync/llm/client.py

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import httpx
import openai
from openai import OpenAI

from ..errors import ConfigurationError, TaskMasterError

logger = logging.getLogger(__name__)

BAD_MODEL_COOLDOWN_SECONDS = 3600.0


def _is_auth_error(exc: Exception) -> bool:
    return isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError))


def _is_rate_limit_error(exc: Exception) -> bool:
    return isinstance(exc, openai.RateLimitError)


def _is_connection_error(exc: Exception) -> bool:
    return isinstance(exc, (openai.APIConnectionError, openai.APITimeoutError))


def _is_not_found_error(exc: Exception) -> bool:
    # OpenAI-compatible servers answer 404 for models they do not serve.
    return isinstance(exc, openai.NotFoundError)


def _message_text(response: Any) -> str:
    try:
        content = response.choices[0].message.content
    except (AttributeError, IndexError):
        return ""
    return content or ""


class OpenAIContentGenerator:
    """
    Drafts task text through an OpenAI-compatible chat endpoint.

    Behavior:
    - Tries models in the configured order.
    - 404 (model not available) -> model is skipped for an hour, try next.
    - Rate limit / network issues -> try next.
    - Auth issues -> fail fast (no retries across models).
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        models: List[str],
        extra_headers: Optional[Dict[str, str]] = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 60.0,
        client: OpenAI | None = None,
    ) -> None:
        if client is None:
            if not api_key or not api_key.strip():
                raise ConfigurationError("LLM API key is not set. Set TASKMASTER_OPENAI_API_KEY in your .env.")
            if not base_url.strip():
                raise ConfigurationError("LLM base URL is not set. Set TASKMASTER_OPENAI_BASE_URL in your .env.")
            # Automatic retries off so fallback across models stays quick.
            client = OpenAI(
                base_url=base_url,
                api_key=api_key,
                timeout=httpx.Timeout(connect=connect_timeout, read=read_timeout, write=10.0, pool=connect_timeout),
                max_retries=0,
            )

        self._models = [m.strip() for m in models if m and m.strip()]
        if not self._models:
            raise ConfigurationError("LLM model list is empty. Set TASKMASTER_LLM_MODELS in your .env.")

        self._client = client
        self._headers = dict(extra_headers or {})
        self._bad_models: dict[str, float] = {}  # model -> retry_at (monotonic)

    @classmethod
    def from_settings(cls, settings: Any) -> OpenAIContentGenerator:
        return cls(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            models=list(settings.llm_models),
            extra_headers=dict(settings.extra_headers),
        )

    def generate_text(self, prompt: str, *, system_prompt: str) -> str:
        last_error: Optional[Exception] = None
        now = time.monotonic()

        for model in self._models:
            retry_at = self._bad_models.get(model)
            if retry_at is not None and retry_at > now:
                continue

            logger.info("LLM: trying model=%s", model)
            t0 = time.monotonic()
            try:
                response = self._client.chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": prompt},
                    ],
                    extra_headers=self._headers or None,
                )
            except Exception as e:
                last_error = e

                if _is_auth_error(e):
                    raise ConfigurationError("LLM authentication failed. Check your API key.") from e

                if _is_not_found_error(e):
                    self._bad_models[model] = time.monotonic() + BAD_MODEL_COOLDOWN_SECONDS
                    logger.info("LLM: model not available (404): %s", model)
                    continue

                if _is_rate_limit_error(e):
                    logger.info("LLM: rate-limited on model=%s, trying next", model)
                    continue

                if _is_connection_error(e):
                    logger.info("LLM: network/timeout error on model=%s, trying next", model)
                    continue

                logger.info("LLM: error on model=%s (%s), trying next", model, e.__class__.__name__)
                continue

            text = _message_text(response)
            if text.strip():
                logger.info("LLM: completed with model=%s (%.2fs)", model, time.monotonic() - t0)
                return text
            last_error = TaskMasterError(f"Model returned no content: {model}")

        if last_error is not None:
            if _is_rate_limit_error(last_error):
                raise TaskMasterError("LLM is rate-limited. Try again later.") from last_error
            if _is_connection_error(last_error):
                raise TaskMasterError("LLM network/timeout error. Try again later or change models.") from last_error
        raise TaskMasterError("All LLM models failed.") from last_error
