"""Client for an OpenAI-compatible chat completions endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import httpx

from .config import GateSettings
from .errors import EmptyCompletion, ProviderFailure

logger = logging.getLogger(__name__)


# -----------------------------
# Types
# -----------------------------

@dataclass
class Completion:
    text: str
    model: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None


class CompletionProvider(Protocol):
    async def complete(self, payload: Dict[str, Any]) -> Completion:
        ...


def _as_message(m: Any) -> Dict[str, str]:
    if isinstance(m, Mapping):
        return {"role": str(m["role"]), "content": str(m["content"])}
    return {"role": m.role, "content": m.content}


# -----------------------------
# Request / response shaping
# -----------------------------

def build_request(
    system_prompt: str,
    messages: Sequence[Any],
    *,
    model: str,
    max_tokens: int,
    temperature: float,
) -> Dict[str, Any]:
    """Assemble the provider payload: system prompt first, then the transcript."""
    msgs: List[Dict[str, str]] = []
    if (system_prompt or "").strip():
        msgs.append({"role": "system", "content": system_prompt})
    msgs.extend(_as_message(m) for m in messages)
    return {
        "model": model,
        "messages": msgs,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }


def parse_completion(data: Dict[str, Any]) -> Completion:
    """Pull the first choice's text out of a provider response.

    Raises :class:`EmptyCompletion` instead of returning blank text, and
    :class:`ProviderFailure` when the body is not shaped like a completion.
    """
    choices = data.get("choices")
    if choices is None:
        choices = []
    if not isinstance(choices, list):
        raise ProviderFailure("Malformed provider response: choices is not a list.", code="provider_bad_response")
    text = ""
    if choices:
        first = choices[0]
        if not isinstance(first, dict):
            raise ProviderFailure("Malformed provider response: choice is not an object.", code="provider_bad_response")
        message = first.get("message")
        if message is None:
            message = {}
        if not isinstance(message, dict):
            raise ProviderFailure("Malformed provider response: message is not an object.", code="provider_bad_response")
        content = message.get("content")
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise ProviderFailure("Malformed provider response: content is not a string.", code="provider_bad_response")
        text = content.strip()
    if not text:
        raise EmptyCompletion("The model returned an empty reply.")
    usage = data.get("usage")
    return Completion(
        text=text,
        model=data.get("model"),
        usage=usage if isinstance(usage, dict) else None,
    )


def shape_reply(completion: Completion) -> Dict[str, Any]:
    """Render a completion in the response shape the chat widget expects."""
    return {
        "data": {
            "output_text": completion.text,
            "output": [
                {
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": completion.text}],
                }
            ],
        },
        "usage": completion.usage,
        "model": completion.model,
    }


# -----------------------------
# HTTP client
# -----------------------------

class ChatCompletionsClient:
    """Single-attempt async client; failures surface as :class:`ProviderFailure`.

    Parameters
    ----------
    api_key : str | None
        Bearer token for the provider.
    api_base : str
        Base URL, ``/v1/chat/completions`` is appended.
    timeout : float
        Total seconds allowed for the call.
    transport : httpx.AsyncBaseTransport | None
        Optional transport override (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        api_base: str = "https://api.openai.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self.url = api_base.rstrip("/") + "/v1/chat/completions"
        self.timeout = timeout
        self._transport = transport

    async def complete(self, payload: Dict[str, Any]) -> Completion:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderFailure(
                f"Provider did not answer within {self.timeout:g}s.",
                code="provider_timeout",
                status_code=504,
            ) from e
        except httpx.RequestError as e:
            raise ProviderFailure(f"Could not reach provider: {e}", code="provider_unreachable") from e

        try:
            data = resp.json()
        except ValueError:
            data = None

        if not resp.is_success:
            # Normalize common errors so the widget can show helpful text
            err = data.get("error") if isinstance(data, dict) else None
            err = err if isinstance(err, dict) else {}
            code = err.get("code") or err.get("type") or "provider_error"
            msg = err.get("message") or "Provider request failed. Check API key, model, or usage limits."
            logger.warning("provider returned HTTP %d (%s)", resp.status_code, code)
            raise ProviderFailure(str(msg), code=str(code), detail={"status": resp.status_code})

        if not isinstance(data, dict):
            raise ProviderFailure("Provider returned a non-JSON response.", code="provider_bad_response")
        return parse_completion(data)


def create_from_settings(settings: GateSettings) -> ChatCompletionsClient:
    """Create a client from :class:`GateSettings`."""
    return ChatCompletionsClient(
        settings.api_key,
        api_base=settings.api_base,
        timeout=settings.timeout,
    )
