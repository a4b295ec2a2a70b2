"""Tests for logging setup and filesystem helpers."""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Iterator

import pytest
import yaml

from pa_generator.utils import fs, logging_config
from pa_generator.utils.logging_config import (
    ContextFormatter,
    install_excepthook,
    pop_context,
    push_context,
    setup_logging,
)


@pytest.fixture()
def restore_root(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Undo root-logger and context changes made by a test."""
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    monkeypatch.setattr(logging_config, "_configured", False)
    yield
    for handler in list(root.handlers):
        if handler not in saved_handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in saved_handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(saved_level)
    pop_context()


def make_record(msg: str = "hello") -> logging.LogRecord:
    return logging.LogRecord("pa_generator.test", logging.INFO, __file__, 1, msg, None, None)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestFormatter:
    def test_json_includes_context(self, restore_root: None) -> None:
        push_context(app="pa-generate", objects=4)
        payload = json.loads(ContextFormatter("json").format(make_record()))
        assert payload["msg"] == "hello"
        assert payload["lvl"] == "INFO"
        assert payload["objects"] == 4

    def test_human_layout(self, restore_root: None) -> None:
        push_context(app="pa-generate")
        line = ContextFormatter("human", use_color=False).format(make_record())
        assert line.endswith("| app=pa-generate | hello")
        assert "INFO" in line

    def test_pop_context(self, restore_root: None) -> None:
        push_context(a=1, b=2)
        pop_context(["a"])
        line = ContextFormatter("human", use_color=False).format(make_record())
        assert "b=2" in line and "a=1" not in line

    def test_invalid_mode(self) -> None:
        with pytest.raises(ValueError):
            ContextFormatter("xml")


class TestSetupLogging:
    def test_file_handler(self, restore_root: None, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "run.log"
        handlers = setup_logging(
            "DEBUG", log_file, to_stderr=False, capture_warnings=False, context={"app": "t"}
        )
        assert len(handlers) == 1
        logging.getLogger("pa_generator.test").info("layout chosen")
        handlers[0].flush()
        text = log_file.read_text(encoding="utf-8")
        assert "app=t" in text and "layout chosen" in text

    def test_repeated_setup_replaces_handlers(self, restore_root: None, tmp_path: Path) -> None:
        setup_logging("INFO", tmp_path / "a.log", to_stderr=False, capture_warnings=False)
        setup_logging("INFO", tmp_path / "b.log", to_stderr=False, capture_warnings=False)
        files = [h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)]
        assert len(files) == 1

    def test_rotation(self, restore_root: None, tmp_path: Path) -> None:
        handlers = setup_logging(
            "INFO",
            tmp_path / "r.log",
            to_stderr=False,
            capture_warnings=False,
            rotate={"mode": "size", "max_bytes": 1000, "backup_count": 1},
        )
        assert isinstance(handlers[0], logging.handlers.RotatingFileHandler)

    def test_unknown_level(self, restore_root: None) -> None:
        with pytest.raises(ValueError):
            setup_logging("LOUD", to_stderr=False, capture_warnings=False)

    def test_unknown_rotation(self, restore_root: None, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            setup_logging(
                "INFO", tmp_path / "x.log", to_stderr=False, capture_warnings=False, rotate={"mode": "weekly"}
            )


def test_excepthook_logs(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    install_excepthook()
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        exc_type, exc_value, tb = sys.exc_info()
    with caplog.at_level(logging.CRITICAL):
        sys.excepthook(exc_type, exc_value, tb)
    assert "Uncaught exception" in caplog.text


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


class TestFs:
    def test_atomic_write_creates_parent(self, tmp_path: Path) -> None:
        target = tmp_path / "nested" / "PA_Test.gcode"
        fs.atomic_write_text(target, "G28\n")
        assert target.read_text(encoding="utf-8") == "G28\n"
        assert not target.with_suffix(".gcode.tmp").exists()

    def test_atomic_write_overwrites(self, tmp_path: Path) -> None:
        target = tmp_path / "a.gcode"
        fs.atomic_write_text(target, "old")
        fs.atomic_write_text(target, "new")
        assert target.read_text(encoding="utf-8") == "new"

    def test_load_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "p.yaml"
        path.write_text("layer_height: 0.2\n", encoding="utf-8")
        assert fs.load_yaml(path) == {"layer_height": 0.2}

    def test_load_yaml_errors(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            fs.load_yaml(tmp_path / "missing.yaml")
        bad = tmp_path / "bad.yaml"
        bad.write_text("a: [1, 2\n", encoding="utf-8")
        with pytest.raises(yaml.YAMLError):
            fs.load_yaml(bad)
