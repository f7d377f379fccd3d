import json
import logging

import pytest

from calcgen.config import Settings, make_connector
from calcgen.prompts.builder import build_messages, build_plan_prompt
from calcgen.utils.logger_config import EmojiFormatter, setup_logging
from main import main

CALCGEN_ENV = (
    "CALCGEN_LLM_PROVIDER",
    "CALCGEN_MAX_ATTEMPTS",
    "CALCGEN_CACHE_DIR",
    "CALCGEN_CREATED_BY",
    "CALCGEN_LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in CALCGEN_ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


# ---------------------------------------------------------------------------
# Prompt builder
# ---------------------------------------------------------------------------

def test_prompt_lists_request_data(gs_request):
    prompt = build_plan_prompt(gs_request)

    assert "Tester" in prompt
    assert "Genshin Impact (gs)" in prompt
    assert '- e: ["Skill DMG", "Skill DMG Bonus", "CD"]' in prompt
    assert '"Charged Attack DMG": "60%*2"' in prompt
    assert "Deals Pyro DMG to nearby opponents." in prompt
    assert "ATK is increased by 20%" in prompt
    assert "to_ratio(x)` divides by 100" in prompt
    assert "PREVIOUS ATTEMPT FAILED" not in prompt
    assert "{max_details}" not in prompt
    assert prompt.index("- a:") < prompt.index("- e:") < prompt.index("- q:")


def test_prompt_leaves_out_empty_sections(skill_request):
    prompt = build_plan_prompt(skill_request)
    assert "Skill Damage" in prompt
    assert "## SKILL DESCRIPTIONS" not in prompt
    assert "## SAMPLE VALUES" in prompt
    assert "- q:" not in prompt


def test_sr_prompt_uses_sr_rules(sr_request):
    prompt = build_plan_prompt(sr_request)
    assert "Honkai: Star Rail (sr)" in prompt
    assert "never multiply talent values by 100" in prompt
    assert "- t:" in prompt


def test_retry_prompt(gs_request):
    messages = build_messages(gs_request, hint="details[0]: unknown table", attempt=1)
    assert [m.role for m in messages] == ["system", "user"]
    assert "## PREVIOUS ATTEMPT FAILED\ndetails[0]: unknown table" in messages[1].content
    assert messages[1].content.rstrip().endswith("Any text outside the JSON object is discarded.")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def test_settings_defaults(clean_env):
    settings = Settings.from_env()
    assert settings.llm_provider == "openai"
    assert settings.max_attempts == 3
    assert settings.cache_dir == ".cache/llm"
    assert settings.created_by == "calcgen"


def test_settings_from_env(clean_env):
    clean_env.setenv("CALCGEN_LLM_PROVIDER", " Gemini ")
    clean_env.setenv("CALCGEN_MAX_ATTEMPTS", "5")
    clean_env.setenv("CALCGEN_CACHE_DIR", "")
    clean_env.setenv("CALCGEN_CREATED_BY", "balance-bot")
    settings = Settings.from_env()
    assert settings.llm_provider == "gemini"
    assert settings.max_attempts == 5
    assert settings.cache_dir is None
    assert settings.created_by == "balance-bot"


@pytest.mark.parametrize("name,value", [("CALCGEN_MAX_ATTEMPTS", "0"), ("CALCGEN_LLM_PROVIDER", "claude")])
def test_invalid_settings(clean_env, name, value):
    clean_env.setenv(name, value)
    with pytest.raises(ValueError):
        Settings.from_env()


def test_make_connector(clean_env):
    assert make_connector(Settings(llm_provider="none")) is None
    for name in ("OPENAI_API_BASE_URL", "OPENAI_API_KEY", "OPENAI_API_MODEL"):
        clean_env.delenv(name, raising=False)
    with pytest.raises(ValueError):
        make_connector(Settings(llm_provider="openai"))
    clean_env.delenv("GEMINI_API_KEY", raising=False)
    with pytest.raises(ValueError):
        make_connector(Settings(llm_provider="gemini"))


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _write_request(path, request):
    path.write_text(json.dumps(request.model_dump()), encoding="utf-8")
    return str(path)


def test_cli_writes_module(tmp_path, clean_env, gs_request):
    clean_env.chdir(tmp_path)
    request_path = _write_request(tmp_path / "request.json", gs_request)
    out = tmp_path / "out" / "tester.py"

    assert main([request_path, "--no-llm", "--no-cache", "-o", str(out)]) == 0
    source = out.read_text(encoding="utf-8")
    assert source.startswith("# Calculation rules for Tester (gs).")
    assert "details = [" in source


def test_cli_prints_to_stdout(tmp_path, clean_env, capsys, gs_request):
    clean_env.chdir(tmp_path)
    clean_env.setenv("CALCGEN_LLM_PROVIDER", "none")
    request_path = _write_request(tmp_path / "request.json", gs_request)

    assert main([request_path]) == 0
    assert "def_dmg_key = " in capsys.readouterr().out


def test_cli_exit_codes(tmp_path, clean_env):
    clean_env.chdir(tmp_path)
    assert main([str(tmp_path / "missing.json"), "--no-llm"]) == 2

    bad = tmp_path / "bad.json"
    bad.write_text('{"game": "xx", "name": "Nobody"}', encoding="utf-8")
    assert main([str(bad), "--no-llm"]) == 2

    empty = tmp_path / "empty.json"
    empty.write_text('{"game": "gs", "name": "Empty", "tables": {"e": ["CD"]}}', encoding="utf-8")
    assert main([str(empty), "--no-llm", "--no-cache"]) == 1


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def test_emoji_formatter_prefixes_level():
    record = logging.LogRecord("calcgen", logging.WARNING, __file__, 1, "fallback used", None, None)
    assert EmojiFormatter("%(message)s").format(record) == "⚠️ fallback used"


def test_setup_logging_replaces_handlers(clean_env):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        setup_logging("debug")
        setup_logging("not-a-level")
        assert len(root.handlers) == 1
        assert root.level == logging.INFO
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
