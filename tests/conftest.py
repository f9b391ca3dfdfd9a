from __future__ import annotations

import json
import stat
import subprocess
import sys
from pathlib import Path

import pytest

from agent_board.config import BoardSettings
from agent_board.dispatch.controller import DispatchController
from agent_board.storage.container import Container

DEFAULT_STREAM = [
    {"type": "system", "subtype": "init", "session_id": "sess-123"},
    {
        "type": "assistant",
        "message": {"content": [{"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "ls"}}]},
    },
    {
        "type": "user",
        "message": {"content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "README.md", "is_error": False}]},
    },
    {
        "type": "result",
        "result": "Fixed the bug",
        "cost_usd": 0.01,
        "duration_ms": 1200,
        "num_turns": 2,
        "is_error": False,
        "session_id": "sess-123",
    },
]

# Stand-in for the agent binary. Behaviour is driven by FAKE_AGENT_* variables.
FAKE_AGENT_SOURCE = '''
import json
import os
import subprocess
import sys
import time

record = os.environ.get("FAKE_AGENT_RECORD")
if record:
    with open(record, "a", encoding="utf-8") as handle:
        handle.write(json.dumps({
            "args": sys.argv[1:],
            "cwd": os.getcwd(),
            "CLAUDECODE": os.environ.get("CLAUDECODE"),
            "PORT": os.environ.get("PORT"),
            "npm_config_cache": os.environ.get("npm_config_cache"),
        }) + "\\n")

write = os.environ.get("FAKE_AGENT_WRITE")
if write:
    name, content = write.split("=", 1)
    with open(name, "w", encoding="utf-8") as handle:
        handle.write(content)
    subprocess.run(["git", "add", "-A"], check=True, capture_output=True)
    subprocess.run(["git", "commit", "-m", "agent change"], check=True, capture_output=True)

stderr_bytes = int(os.environ.get("FAKE_AGENT_STDERR_BYTES", "0"))
if stderr_bytes:
    sys.stderr.write("e" * stderr_bytes)
    sys.stderr.flush()

stream = os.environ.get("FAKE_AGENT_STREAM")
if stream:
    with open(stream, "r", encoding="utf-8") as handle:
        for line in handle:
            sys.stdout.write(line)
            sys.stdout.flush()

time.sleep(float(os.environ.get("FAKE_AGENT_SLEEP", "0")))
message = os.environ.get("FAKE_AGENT_ERROR")
if message:
    sys.stderr.write(message)
sys.exit(int(os.environ.get("FAKE_AGENT_EXIT", "0")))
'''


def git_init(path: Path) -> None:
    """Initialize a git repo with an initial commit."""
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=path, check=True, capture_output=True, text=True)
    (path / "README.md").write_text("# init\n")
    subprocess.run(["git", "add", "-A"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "commit", "-m", "initial"], cwd=path, check=True, capture_output=True, text=True)


def write_stream(path: Path, events: list) -> Path:
    path.write_text("".join((e if isinstance(e, str) else json.dumps(e)) + "\n" for e in events))
    return path


@pytest.fixture
def fake_agent(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    script = tmp_path / "fake-agent"
    script.write_text(f"#!{sys.executable}\n{FAKE_AGENT_SOURCE}")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv("FAKE_AGENT_STREAM", str(write_stream(tmp_path / "stream.jsonl", DEFAULT_STREAM)))
    monkeypatch.setenv("FAKE_AGENT_RECORD", str(tmp_path / "calls.jsonl"))
    for name in ("FAKE_AGENT_WRITE", "FAKE_AGENT_SLEEP", "FAKE_AGENT_EXIT", "FAKE_AGENT_ERROR", "FAKE_AGENT_STDERR_BYTES"):
        monkeypatch.delenv(name, raising=False)
    return script


def agent_calls(tmp_path: Path) -> list[dict]:
    path = tmp_path / "calls.jsonl"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


@pytest.fixture
def container(tmp_path: Path, fake_agent: Path) -> Container:
    return Container(tmp_path / "data", settings=BoardSettings(agent_bin=str(fake_agent)))


@pytest.fixture
def controller(container: Container):
    ctl = DispatchController(container)
    yield ctl
    for handle in list(ctl._active.values()):
        handle.token.cancel()
    ctl.wait_idle(timeout=10)
