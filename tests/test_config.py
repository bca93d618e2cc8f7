from __future__ import annotations

from pathlib import Path

import pytest

from concierge.config import (
    DEFAULT_SYSTEM_PROMPT,
    GateSettings,
    load_config,
    resolve_cors_origins,
    settings_from_config,
)


def test_missing_file_falls_back_to_defaults(tmp_path: Path, clean_env):
    cfg = load_config(str(tmp_path / "nope.yaml"))
    s = settings_from_config(cfg)
    assert s == GateSettings()
    assert s.api_key is None
    assert s.free_turns == 6
    assert s.model == "gpt-4o-mini"
    assert s.system_prompt == DEFAULT_SYSTEM_PROMPT


def test_shipped_default_config_loads(project_root: Path, clean_env):
    s = settings_from_config(load_config(str(project_root / "config" / "default.yaml")))
    assert s.free_turns == 6
    assert s.history_turns == 10
    assert s.max_tokens == 420
    assert s.cors_origins == ["*"]
    assert s.daily_hard_cap == 0.0


def test_config_env_var_selects_file(tmp_path: Path, clean_env, monkeypatch):
    cfg_file = tmp_path / "custom.yaml"
    cfg_file.write_text("provider:\n  model: gpt-4.1-mini\n", encoding="utf-8")
    monkeypatch.setenv("CONCIERGE_CONFIG", str(cfg_file))
    assert settings_from_config(load_config()).model == "gpt-4.1-mini"


def test_flat_env_vars_apply(tmp_path: Path, clean_env, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-123")
    monkeypatch.setenv("MAX_TURNS_FREE", "0")
    monkeypatch.setenv("MAX_TOKENS_PER_REPLY", "450")
    monkeypatch.setenv("ALLOWED_ORIGIN", "https://a.example, https://b.example")
    monkeypatch.setenv("WEBHOOK_URL", "https://hooks.example/lead")
    s = settings_from_config(load_config(str(tmp_path / "missing.yaml")))
    assert s.api_key == "sk-123"
    # zero is a real limit, not "use the default"
    assert s.free_turns == 0
    assert s.max_tokens == 450
    assert s.cors_origins == ["https://a.example", "https://b.example"]
    assert s.webhook_url == "https://hooks.example/lead"


def test_prefixed_overrides_win_over_file_and_flat_env(tmp_path: Path, clean_env, monkeypatch):
    cfg_file = tmp_path / "c.yaml"
    cfg_file.write_text("gate:\n  free_turns: 10\n", encoding="utf-8")
    monkeypatch.setenv("MAX_TURNS_FREE", "8")
    monkeypatch.setenv("CONCIERGE__GATE__FREE_TURNS", "3")
    monkeypatch.setenv("CONCIERGE__PROVIDER__TEMPERATURE", "0.9")
    monkeypatch.setenv("CONCIERGE__SPEND__STORE", "file")
    cfg = load_config(str(cfg_file))
    assert cfg["gate"]["free_turns"] == 3
    s = settings_from_config(cfg)
    assert s.free_turns == 3
    assert s.temperature == 0.9
    assert s.spend_store == "file"


def test_invalid_number_falls_back(clean_env):
    s = settings_from_config({"gate": {"free_turns": "lots"}})
    assert s.free_turns == 6


def test_invalid_yaml_raises(tmp_path: Path, clean_env):
    bad = tmp_path / "bad.yaml"
    bad.write_text("gate: [unclosed\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(bad))

    not_a_map = tmp_path / "list.yaml"
    not_a_map.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(not_a_map))


def test_system_prompt_file(tmp_path: Path):
    prompt = tmp_path / "prompt.txt"
    prompt.write_text("  Be helpful.\n", encoding="utf-8")
    s = settings_from_config({"prompt": {"system_prompt_file": str(prompt), "system_prompt": "ignored"}})
    assert s.system_prompt == "Be helpful."


def test_secrets_hidden_from_repr():
    s = GateSettings(api_key="sk-secret", crm_api_key="crm-secret", webhook_secret="whsec")
    text = repr(s)
    assert "sk-secret" not in text
    assert "crm-secret" not in text
    assert "whsec" not in text


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, ["*"]),
        ("", ["*"]),
        ("*", ["*"]),
        ("https://a.example", ["https://a.example"]),
        ("https://a.example,https://b.example", ["https://a.example", "https://b.example"]),
        (["https://a.example", " https://b.example "], ["https://a.example", "https://b.example"]),
        (["https://a.example", "*"], ["*"]),
        ([], ["*"]),
    ],
)
def test_resolve_cors_origins(value, expected):
    assert resolve_cors_origins(value) == expected
