"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from concierge.config import GateSettings  # noqa: E402
from concierge.errors import GateError  # noqa: E402
from concierge.llm import Completion  # noqa: E402


class FakeProvider:
    """Records payloads and replies with a canned completion (or raises)."""

    def __init__(
        self,
        reply: str = "ok",
        usage: Optional[Dict[str, Any]] = None,
        error: Optional[GateError] = None,
    ):
        self.reply = reply
        self.usage = usage
        self.error = error
        self.payloads: List[Dict[str, Any]] = []

    async def complete(self, payload: Dict[str, Any]) -> Completion:
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return Completion(text=self.reply, model=payload.get("model"), usage=self.usage)


class RecordingSink:
    def __init__(self, name: str = "recording", fail: bool = False):
        self.name = name
        self.fail = fail
        self.leads: List[Dict[str, Any]] = []

    async def send(self, lead: Dict[str, Any]) -> None:
        self.leads.append(lead)
        if self.fail:
            raise RuntimeError(f"{self.name} is down")


def transcript(*roles: str) -> List[Dict[str, str]]:
    """Build [{role, content}] with contents like 'u1', 'a1', 'u2', ..."""
    counters: Dict[str, int] = {}
    out = []
    for role in roles:
        counters[role] = counters.get(role, 0) + 1
        out.append({"role": role, "content": f"{role[0]}{counters[role]}"})
    return out


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def settings(tmp_path: Path) -> GateSettings:
    """Settings with a dummy key, the default limits and no outbound side channels."""
    return GateSettings(
        api_key="test-key",
        free_turns=6,
        history_turns=10,
        system_prompt="You are a test concierge.",
        spend_store="none",
        spend_path=str(tmp_path / "spend.json"),
    )


@pytest.fixture(scope="function")
def provider() -> FakeProvider:
    return FakeProvider(reply="Hello from the model.")


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in [
        "CONCIERGE_CONFIG",
        "OPENAI_API_KEY",
        "OPENAI_MODEL",
        "OPENAI_API_BASE",
        "MAX_TURNS_FREE",
        "MAX_TOKENS_PER_REPLY",
        "TEMPERATURE",
        "HISTORY_TURNS",
        "DAILY_HARD_CAP",
        "ALLOWED_ORIGIN",
        "CRM_URL",
        "CRM_API_KEY",
        "WEBHOOK_URL",
        "WEBHOOK_SECRET",
    ]:
        monkeypatch.delenv(var, raising=False)
    for var in list(os.environ):
        if var.startswith("CONCIERGE__"):
            monkeypatch.delenv(var, raising=False)
    yield
