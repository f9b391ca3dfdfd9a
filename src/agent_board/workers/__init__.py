"""Agent process supervision and stream parsing."""

from .config import AgentCommandSpec, command_spec_from_settings
from .follow import LiveStreamFollower, reconnect_delay
from .process import (
    AgentProcessRunner,
    AgentRun,
    AgentRunResult,
    AgentSpawnError,
    CancellationToken,
    sanitized_env,
)
from .stream import RenderBlock, StreamEventParser, render_blocks_text, replay_log

__all__ = [
    "AgentCommandSpec",
    "AgentProcessRunner",
    "AgentRun",
    "AgentRunResult",
    "AgentSpawnError",
    "CancellationToken",
    "LiveStreamFollower",
    "RenderBlock",
    "StreamEventParser",
    "command_spec_from_settings",
    "reconnect_delay",
    "render_blocks_text",
    "replay_log",
    "sanitized_env",
]
