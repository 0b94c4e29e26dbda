"""Chat-completion providers with ordered failover"""

import logging
import httpx
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from app.config import settings

logger = logging.getLogger(__name__)

PAYMENT_REQUIRED = 402
TOO_MANY_REQUESTS = 429


class ProviderError(Exception):
    """A model provider failed in a way the caller cannot recover from"""


class ProviderRateLimitError(ProviderError):
    """Provider answered 429; surfaced to the user instead of retried"""


class ProviderTimeoutError(ProviderError):
    """Provider did not answer within the configured timeout"""


class ProviderQuotaError(ProviderError):
    """Every configured provider reported exhausted credits"""


def quota_exhausted(response: httpx.Response) -> bool:
    return response.status_code == PAYMENT_REQUIRED


@dataclass
class ChatProvider:
    """
    One OpenAI-compatible chat-completions endpoint.

    `falls_through` decides which responses hand the request on to the next
    provider in the list.
    """

    name: str
    url: str
    model: str
    api_key: Optional[str]
    falls_through: Callable[[httpx.Response], bool] = field(default=quota_exhausted)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


def default_providers() -> List[ChatProvider]:
    """Primary gateway first, then the direct OpenAI fallback"""
    return [
        ChatProvider(
            name="lovable",
            url=settings.lovable_api_url,
            model=settings.lovable_model,
            api_key=settings.lovable_api_key,
        ),
        ChatProvider(
            name="openai",
            url=settings.openai_api_url,
            model=settings.openai_model,
            api_key=settings.openai_api_key,
        ),
    ]


async def _post(provider: ChatProvider, payload: Dict[str, Any]) -> httpx.Response:
    headers = {
        "Authorization": f"Bearer {provider.api_key}",
        "Content-Type": "application/json",
    }
    async with httpx.AsyncClient() as client:
        return await client.post(
            provider.url,
            json=payload,
            headers=headers,
            timeout=settings.llm_timeout_seconds,
        )


async def complete_chat(
    messages: List[Dict[str, Any]],
    tools: List[Dict[str, Any]],
    providers: Optional[List[ChatProvider]] = None,
) -> Dict[str, Any]:
    """
    Send the transcript and tool schema to the first provider that will take it.

    Args:
        messages: Full transcript in chat-completions format
        tools: Tool declarations
        providers: Ordered providers (defaults to configured gateway + fallback)

    Returns:
        The assistant message dict of the first choice

    Raises:
        ProviderRateLimitError, ProviderTimeoutError, ProviderQuotaError, ProviderError
    """
    candidates = [p for p in (providers or default_providers()) if p.configured]
    if not candidates:
        raise ProviderError("No model provider is configured")

    for provider in candidates:
        payload = {
            "model": provider.model,
            "messages": messages,
            "tools": tools,
            "tool_choice": "auto",
        }

        try:
            response = await _post(provider, payload)
        except httpx.TimeoutException as e:
            logger.error(f"Provider {provider.name} timed out: {e}")
            raise ProviderTimeoutError(f"{provider.name} timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"Provider {provider.name} transport error: {e}")
            raise ProviderError(f"{provider.name} transport error") from e

        if response.status_code == TOO_MANY_REQUESTS:
            logger.warning(f"Provider {provider.name} rate limited the request")
            raise ProviderRateLimitError(f"{provider.name} rate limited")

        if provider.falls_through(response):
            logger.warning(f"Provider {provider.name} returned {response.status_code}, trying next provider")
            continue

        if response.status_code >= 400:
            logger.error(f"Provider {provider.name} error {response.status_code}: {response.text}")
            raise ProviderError(f"{provider.name} returned {response.status_code}")

        try:
            message = response.json()["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Provider {provider.name} returned a malformed body: {response.text}")
            raise ProviderError(f"{provider.name} returned a malformed body") from e

        logger.info(f"Completion served by {provider.name}")
        return message

    raise ProviderQuotaError("All model providers are out of credits")
