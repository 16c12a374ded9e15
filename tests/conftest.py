"""Shared fixtures: settings that point WorkIQ at tests/fake_workiq.py."""

import stat
import sys
from pathlib import Path

import pytest

from lambda_service.manager import WorkIQSettings

FAKE_WORKIQ = Path(__file__).parent / "fake_workiq.py"


@pytest.fixture
def fake_binary(tmp_path):
    """Executable wrapper so the fake can be invoked as ``<binary> ask -q ...``."""
    script = tmp_path / "bin" / "workiq"
    script.parent.mkdir()
    script.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_WORKIQ}" "$@"\n')
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def settings(fake_binary):
    return WorkIQSettings(
        binary=str(fake_binary),
        server_args=["mcp"],
        request_timeout=10.0,
        cli_timeout=10.0,
    )


@pytest.fixture
def fake_server_command():
    return [sys.executable, str(FAKE_WORKIQ), "mcp"]
