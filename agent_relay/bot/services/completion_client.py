"""Streaming client for OpenAI-compatible chat/completions providers.

This module resolves the endpoint a provider URL points at, streams a
completion as server-sent events and lists the models a provider offers.
Built on httpx for async support.
"""

from __future__ import annotations

import json
import logging
import re
from typing import AsyncIterator, Optional, Sequence
from urllib.parse import urlsplit, urlunsplit

import httpx

from agent_relay.bot.agents.models import ChatMessage
from agent_relay.bot.agents.segmenter import DONE
from agent_relay.bot.agents.segmenter import parse_stream_line
from agent_relay.bot.services.exceptions import (
    EmptyResponseError,
    InvalidProviderURLError,
    ProviderConnectionError,
    ProviderError,
    ProviderResponseError,
    StreamInterruptedError,
)
from agent_relay.bot.services.models import ProviderCredential

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = re.compile(r"/chat/completions/?$")
COMPLETIONS_PATH = re.compile(r"/completions/?$")
ANY_COMPLETIONS_PATH = re.compile(r"/(?:chat/)?completions/?$")
MODELS_PATH = re.compile(r"/models/?$")
GROQ_COMPLETIONS_PATH = "/openai/v1/chat/completions"


def _split_provider_url(provider_name: str, url: str):
    try:
        parts = urlsplit(url.strip())
    except ValueError as e:
        raise InvalidProviderURLError(provider_name, url) from e
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise InvalidProviderURLError(provider_name, url)
    return parts


def resolve_completions_url(url: str, provider_name: str = "") -> str:
    """Resolve the chat/completions endpoint for a provider URL.

    Groq hosts always use their OpenAI-compatible path. URLs already ending
    in ``/chat/completions``, or in a legacy ``/completions`` endpoint, are
    kept as they are; anything else is treated as an API base URL.

    Raises:
        InvalidProviderURLError: If the URL is not an absolute http(s) URL
    """
    parts = _split_provider_url(provider_name, url)
    path = parts.path

    if "groq.com" in parts.hostname:
        path = GROQ_COMPLETIONS_PATH
    elif CHAT_COMPLETIONS_PATH.search(path):
        pass
    elif COMPLETIONS_PATH.search(path) and "/chat/" not in path:
        pass
    else:
        path = path.rstrip("/") + "/chat/completions"

    return urlunsplit(parts._replace(path=path))


def resolve_models_url(url: str, provider_name: str = "") -> str:
    """Resolve the ``/models`` listing endpoint for a provider URL.

    Raises:
        InvalidProviderURLError: If the URL is not an absolute http(s) URL
    """
    parts = _split_provider_url(provider_name, url)
    path = parts.path

    if MODELS_PATH.search(path):
        pass
    elif ANY_COMPLETIONS_PATH.search(path):
        path = ANY_COMPLETIONS_PATH.sub("/models", path)
    else:
        path = path.rstrip("/") + "/models"

    return urlunsplit(parts._replace(path=path))


class CompletionClient:
    """Calls chat/completions providers on behalf of agents."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        error_body_limit: int = 500,
        verbose: bool = False
    ):
        """Initialize completion client.

        Args:
            client: Shared HTTP client; one is created lazily when omitted
            timeout: Request timeout in seconds, None for no timeout
            error_body_limit: Characters of a provider error body kept in reports
            verbose: Log request bodies and stream chunks at DEBUG level
        """
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._error_body_limit = error_body_limit
        self._verbose = verbose

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def stream_completion(
        self,
        credential: ProviderCredential,
        model: str,
        messages: Sequence[ChatMessage],
        agent_name: str = ""
    ) -> AsyncIterator[str]:
        """Stream a completion and yield its content deltas.

        Args:
            credential: Provider to call
            model: Model identifier
            messages: Transcript to complete
            agent_name: Agent the completion is for, used in error reports

        Yields:
            str: Non-empty content deltas in stream order

        Raises:
            InvalidProviderURLError: If the provider URL is unusable
            ProviderConnectionError: If the request cannot be sent
            ProviderResponseError: If the provider returns a non-success status
            EmptyResponseError: If the provider returns no body
            StreamInterruptedError: If reading the stream fails part way through
        """
        url = resolve_completions_url(credential.endpoint_url, credential.name)
        client = await self._ensure_client()

        payload = {
            "model": model,
            "messages": [message.model_dump(exclude_none=True) for message in messages],
            "stream": True,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {credential.api_key}",
        }
        if self._verbose:
            logger.debug(f"LLM request to {url}: {json.dumps(payload)}")

        try:
            async with client.stream("POST", url, json=payload, headers=headers) as response:
                if self._verbose:
                    logger.debug(f"LLM response status from {url}: {response.status_code} {response.reason_phrase}")
                await self._check_stream_response(response, credential)

                try:
                    async for line in response.aiter_lines():
                        if self._verbose and line:
                            logger.debug(f"LLM stream chunk: {line}")
                        delta = parse_stream_line(line)
                        if delta is DONE:
                            return
                        if delta:
                            yield delta
                except httpx.HTTPError as e:
                    logger.error(f"Stream error from provider {credential.name} for agent {agent_name}: {e}")
                    raise StreamInterruptedError(credential.name, agent_name, str(e)) from e

        except httpx.HTTPError as e:
            logger.error(f"Error calling provider {credential.name} for agent {agent_name}: {e!r}")
            raise ProviderConnectionError(credential.name, str(e) or e.__class__.__name__) from e

    async def _check_stream_response(
        self,
        response: httpx.Response,
        credential: ProviderCredential
    ) -> None:
        if not response.is_success:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                body = "Could not read error body."
            logger.error(
                f"Provider {credential.name} returned {response.status_code} "
                f"{response.reason_phrase}: {body}"
            )
            raise ProviderResponseError(
                credential.name,
                response.status_code,
                response.reason_phrase,
                body[: self._error_body_limit],
            )

        if response.headers.get("content-length") == "0":
            logger.error(f"Provider {credential.name} returned an empty body")
            raise EmptyResponseError(credential.name)

    async def list_models(self, credential: ProviderCredential) -> list[str]:
        """List the model identifiers a provider offers.

        Raises:
            InvalidProviderURLError: If the provider URL is unusable
            ProviderConnectionError: If the request cannot be sent
            ProviderResponseError: If the provider returns a non-success status
            ProviderError: If the response is not valid JSON
        """
        url = resolve_models_url(credential.endpoint_url, credential.name)
        client = await self._ensure_client()

        try:
            response = await client.get(
                url,
                headers={
                    "Authorization": f"Bearer {credential.api_key}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Network error fetching models from {credential.name}: {e!r}")
            raise ProviderConnectionError(
                credential.name,
                str(e) or e.__class__.__name__,
                user_message=f'Network error fetching models from "{credential.name}": {e}',
            ) from e

        if response.status_code == 404:
            raise ProviderResponseError(
                credential.name,
                404,
                response.reason_phrase,
                user_message=(
                    f'Provider "{credential.name}" does not have a /models endpoint '
                    "(received 404 Not Found)."
                ),
            )
        if not response.is_success:
            raise ProviderResponseError(
                credential.name,
                response.status_code,
                response.reason_phrase,
                response.text[: self._error_body_limit],
                user_message=(
                    f'Error fetching models from "{credential.name}": '
                    f"{response.status_code} {response.reason_phrase}"
                ),
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(
                f"Invalid JSON from {credential.name} /models endpoint",
                provider_name=credential.name,
                user_message=f'Received invalid JSON response from "{credential.name}" /models endpoint.',
            ) from e

        data = payload.get("data") if isinstance(payload, dict) else None
        models = []
        for entry in data or []:
            if isinstance(entry, dict):
                model_id = entry.get("id") or entry.get("name")
                if model_id:
                    models.append(model_id)
        return models
