"""Resolve how the agent binary is invoked."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..config import BoardSettings

STREAM_ARGS = (
    "--print",
    "--verbose",
    "--dangerously-skip-permissions",
    "--output-format",
    "stream-json",
)


@dataclass(frozen=True)
class AgentCommandSpec:
    binary: str = "claude"
    model: str = ""
    system_prompt_additions: str = ""

    def build_args(
        self,
        prompt: str,
        *,
        resume_session: Optional[str] = None,
        continue_last: bool = False,
    ) -> list[str]:
        args = list(STREAM_ARGS)
        if self.model:
            args += ["--model", self.model]
        if self.system_prompt_additions:
            args += ["--append-system-prompt", self.system_prompt_additions]
        if resume_session:
            args += ["--resume", resume_session]
        elif continue_last:
            args.append("-c")
        args += ["-p", prompt]
        return args


def command_spec_from_settings(settings: BoardSettings) -> AgentCommandSpec:
    return AgentCommandSpec(
        binary=settings.agent_bin.strip() or "claude",
        model=settings.default_model.strip(),
        system_prompt_additions=settings.system_prompt_additions,
    )
