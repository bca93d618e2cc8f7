"""Conversation gate: transcript validation, turn accounting and history compaction.

Everything here is a pure function of the request. The quota is recomputed on
every call from the transcript the caller submits; there is no server-side
session, so a caller who resubmits a shorter transcript also resets its quota.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, List, Literal, Mapping, Optional, Sequence, TypeVar

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, ValidationError, field_validator

from .errors import MalformedPayload

DEFAULT_FREE_TURNS = 6

Role = Literal["system", "user", "assistant"]
M = TypeVar("M")


# -----------------------------
# Pydantic request models
# -----------------------------
class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Role
    content: StrictStr


class SessionMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    subscriber: StrictBool = False
    non_billable: StrictBool = Field(default=False, alias="nonBillable")
    # Opaque: never validated or counted here. Only objects reach the lead sinks.
    lead: Optional[Any] = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messages: List[ChatMessage]
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)

    @field_validator("metadata", mode="before")
    @classmethod
    def _null_metadata(cls, v: Any) -> Any:
        return {} if v is None else v


# -----------------------------
# Validation
# -----------------------------
def _describe(err: ValidationError) -> str:
    first = err.errors(include_url=False)[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    if loc == "messages" and first.get("type") in {"missing", "list_type"}:
        return "messages must be an array."
    return f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))


def validate_payload(raw: Any) -> ChatRequest:
    """Validate an already-decoded JSON payload.

    A single malformed message rejects the whole request; nothing is dropped
    silently.
    """
    if not isinstance(raw, dict):
        raise MalformedPayload("Request body must be a JSON object.")
    try:
        return ChatRequest.model_validate(raw)
    except ValidationError as e:
        detail = e.errors(include_url=False, include_context=False, include_input=False)
        raise MalformedPayload(_describe(e), detail=detail) from e


def parse_body(body: bytes) -> ChatRequest:
    """Decode a raw HTTP body and validate it."""
    try:
        raw = json.loads(body) if body else None
    except (ValueError, RecursionError) as e:
        raise MalformedPayload("Invalid JSON body.") from e
    return validate_payload(raw)


# -----------------------------
# Quota
# -----------------------------
@dataclass(frozen=True)
class QuotaDecision:
    proceed: bool
    reason: str
    user_turns: Optional[int] = None  # None when the request was never counted

    @property
    def paywall(self) -> bool:
        return not self.proceed


def _role(message: Any) -> Any:
    if isinstance(message, Mapping):
        return message.get("role")
    return getattr(message, "role", None)


def count_user_turns(messages: Sequence[Any]) -> int:
    """Number of user-authored messages; the only billing signal."""
    return sum(1 for m in messages if _role(m) == "user")


def evaluate_quota(
    messages: Sequence[Any],
    metadata: SessionMetadata,
    free_turn_limit: int = DEFAULT_FREE_TURNS,
) -> QuotaDecision:
    """Decide between calling the provider and returning the paywall.

    Order matters: non-billable submissions are exempt before anything is
    counted, subscribers are exempt even with no prior turns. A limit of zero
    or below blocks every request; it never means "unlimited".
    """
    if metadata.non_billable:
        return QuotaDecision(proceed=True, reason="non_billable")

    user_turns = count_user_turns(messages)
    if metadata.subscriber:
        return QuotaDecision(proceed=True, reason="subscriber", user_turns=user_turns)
    if user_turns >= free_turn_limit:
        return QuotaDecision(proceed=False, reason="limit_reached", user_turns=user_turns)
    return QuotaDecision(proceed=True, reason="under_limit", user_turns=user_turns)


# -----------------------------
# Compaction
# -----------------------------
def compact_history(messages: Sequence[M], max_user_turns: int) -> List[M]:
    """Keep the last ``max_user_turns`` user messages and everything after the oldest of them.

    Replies and inline system messages between retained user turns are kept.
    Nothing older than the K-th user message from the end is included. With
    fewer than K user messages the whole transcript comes back. The input is
    never mutated; a new list is always returned.
    """
    if max_user_turns < 1:
        raise ValueError("max_user_turns must be a positive integer")
    seen = 0
    for idx in range(len(messages) - 1, -1, -1):
        if _role(messages[idx]) == "user":
            seen += 1
            if seen == max_user_turns:
                return list(messages[idx:])
    return list(messages)
