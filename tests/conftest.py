from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"

# Force current worktree src to the front of sys.path so imports use this tree,
# not any installed copy.
SRC_STR = str(SRC_PATH)
sys.path = [SRC_STR] + [p for p in sys.path if p != SRC_STR]

ENV_OVERRIDES = (
    "REVIEWPIPE_CLAUDE_CMD",
    "REVIEWPIPE_CURSOR_AGENT_CMD",
    "REVIEWPIPE_PI_CMD",
    "REVIEWPIPE_PI_SESSION",
    "REVIEWPIPE_YOLO",
    "REVIEWPIPE_DEBUG_STREAM",
)


@pytest.fixture(autouse=True)
def _isolate_environment(tmp_path_factory, monkeypatch):
    """Point the config at a scratch file and clear command overrides per test."""
    config_dir = tmp_path_factory.mktemp("config")
    monkeypatch.setenv("REVIEWPIPE_CONFIG", str(config_dir / "config.json"))
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)

    from reviewpipe.util import provider_availability

    provider_availability.reset_state()
    yield
    provider_availability.reset_state()


@pytest.fixture
def fake_cli(tmp_path):
    """Write an executable Python script standing in for a vendor CLI.

    The script body receives ``sys`` and ``os`` imported; returns its path.
    """

    def _make(body: str, name: str = "fake-cli") -> str:
        script = tmp_path / name
        script.write_text(f"#!{sys.executable}\nimport os\nimport sys\n{body}\n", encoding="utf-8")
        script.chmod(0o755)
        return str(script)

    return _make
