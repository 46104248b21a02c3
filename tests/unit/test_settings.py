from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from planloop.config import (
    Settings,
    SettingsError,
    config_sources,
    deep_merge,
    global_config_path,
    load_settings,
)


def _write(path: Path, data: object) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture()
def layout(tmp_path: Path) -> dict:
    """Isolated XDG home and working directory."""

    xdg = tmp_path / "xdg"
    cwd = tmp_path / "work"
    cwd.mkdir()
    return {"env": {"XDG_CONFIG_HOME": str(xdg)}, "cwd": cwd, "xdg": xdg}


def test_deep_merge_merges_nested_mappings_without_mutation() -> None:
    base = {"codex": {"model": "a", "sandbox": "read-only"}, "finalize_enabled": False}
    override = {"codex": {"model": "b"}, "finalize_enabled": True}

    merged = deep_merge(base, override)

    assert merged == {"codex": {"model": "b", "sandbox": "read-only"}, "finalize_enabled": True}
    assert base["codex"]["model"] == "a"


def test_defaults_without_any_files(layout: dict) -> None:
    settings = load_settings(cwd=layout["cwd"], env=layout["env"])

    assert settings == Settings()
    assert settings.iteration.max_iterations == 50
    assert settings.claude.error_patterns == ["You've hit your limit"]
    assert settings.external_review_enabled is True


def test_precedence_global_then_local_then_explicit(layout: dict, tmp_path: Path) -> None:
    _write(layout["xdg"] / "planloop" / "config.yaml", {
        "claude": {"command": "claude-global"},
        "iteration": {"delay_ms": 10, "max_iterations": 20},
    })
    _write(layout["cwd"] / ".planloop" / "config.yaml", {
        "claude": {"command": "claude-local"},
        "codex": {"model": "local-model"},
    })
    explicit = _write(tmp_path / "extra.yaml", {"iteration": {"max_iterations": 7}})

    settings = load_settings(explicit, cwd=layout["cwd"], env=layout["env"])

    assert settings.claude.command == "claude-local"
    assert settings.iteration.delay_ms == 10
    assert settings.iteration.max_iterations == 7
    assert settings.codex.model == "local-model"
    assert settings.codex.sandbox == "read-only"


def test_overrides_apply_last(layout: dict) -> None:
    settings = load_settings(
        cwd=layout["cwd"],
        env=layout["env"],
        overrides=[{"iteration": {"max_iterations": 3}}],
    )
    assert settings.iteration.max_iterations == 3


def test_global_config_path_falls_back_to_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    assert global_config_path({}) == tmp_path / ".config" / "planloop" / "config.yaml"
    assert global_config_path({"XDG_CONFIG_HOME": "/x"}) == Path("/x/planloop/config.yaml")


def test_missing_explicit_file_is_an_error(layout: dict, tmp_path: Path) -> None:
    with pytest.raises(SettingsError, match="Config file not found"):
        config_sources(tmp_path / "nope.yaml", cwd=layout["cwd"], env=layout["env"])


def test_invalid_yaml_reports_path(layout: dict) -> None:
    path = layout["cwd"] / ".planloop" / "config.yaml"
    path.parent.mkdir()
    path.write_text("claude: [unclosed\n", encoding="utf-8")

    with pytest.raises(SettingsError, match="Failed to parse config"):
        load_settings(cwd=layout["cwd"], env=layout["env"])


def test_non_mapping_document_is_rejected(layout: dict) -> None:
    _write(layout["cwd"] / ".planloop" / "config.yaml", ["a", "b"])

    with pytest.raises(SettingsError, match="mapping"):
        load_settings(cwd=layout["cwd"], env=layout["env"])


@pytest.mark.parametrize(
    "data, location",
    [
        ({"claude": {"unknown_key": 1}}, "claude.unknown_key"),
        ({"iteration": {"max_iterations": 0}}, "iteration.max_iterations"),
        ({"external_review_tool": "gemini"}, "external_review_tool"),
    ],
)
def test_validation_errors_name_the_field(layout: dict, data: dict, location: str) -> None:
    _write(layout["cwd"] / ".planloop" / "config.yaml", data)

    with pytest.raises(SettingsError, match=f"Invalid configuration at {location}"):
        load_settings(cwd=layout["cwd"], env=layout["env"])


def test_external_review_can_be_switched_off(layout: dict) -> None:
    _write(layout["cwd"] / ".planloop" / "config.yaml", {"external_review_tool": "none"})
    assert load_settings(cwd=layout["cwd"], env=layout["env"]).external_review_enabled is False

    _write(layout["cwd"] / ".planloop" / "config.yaml", {"codex": {"enabled": False}})
    assert load_settings(cwd=layout["cwd"], env=layout["env"]).external_review_enabled is False


def test_args_accept_string_or_list(layout: dict) -> None:
    _write(layout["cwd"] / ".planloop" / "config.yaml", {
        "claude": {"args": "--verbose --model 'big one'"},
        "qwen": {"args": ["--yolo"]},
    })
    settings = load_settings(cwd=layout["cwd"], env=layout["env"])

    assert settings.claude.args == "--verbose --model 'big one'"
    assert settings.qwen.args == ["--yolo"]
