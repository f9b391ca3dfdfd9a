"""Normalize the agent's ``stream-json`` output into render blocks.

Each input line is one JSON event.  Lines are validated into a tagged union
of event models at the boundary; anything unknown or malformed becomes an
:class:`IgnoredEvent` and is dropped.  The parser keeps a map from the
protocol's ``tool_use`` id to the block it created so a later
``tool_result`` can complete the right block.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any, Iterable, Literal, Optional, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

BlockType = Literal["text", "tool-call", "thinking", "result", "user-message"]
BlockStatus = Literal["active", "complete"]


# -- wire events --------------------------------------------------------------


class _Event(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ContentItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    text: Optional[str] = None
    thinking: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    input: Optional[dict[str, Any]] = None
    tool_use_id: Optional[str] = None
    content: Any = None
    is_error: Optional[bool] = None


class MessageBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: Union[list[ContentItem], str] = Field(default_factory=list)
    stop_reason: Optional[str] = None


class SystemEvent(_Event):
    type: Literal["system"]
    subtype: Optional[str] = None
    session_id: Optional[str] = None


class AssistantEvent(_Event):
    type: Literal["assistant"]
    message: MessageBody
    session_id: Optional[str] = None


class UserEvent(_Event):
    type: Literal["user"]
    message: MessageBody
    session_id: Optional[str] = None


class ResultEvent(_Event):
    type: Literal["result"]
    result: Optional[str] = None
    cost_usd: Optional[float] = None
    total_cost_usd: Optional[float] = None
    duration_ms: Optional[float] = None
    num_turns: Optional[int] = None
    is_error: bool = False
    session_id: Optional[str] = None


class ExitEvent(_Event):
    type: Literal["exit"]
    code: Optional[int] = None


class FollowUpEvent(_Event):
    type: Literal["user-follow-up"]
    message: str = ""


class TextDeltaEvent(_Event):
    type: Literal["content_block_delta"]
    delta: dict[str, Any] = Field(default_factory=dict)


class IgnoredEvent(_Event):
    type: Literal["ignored"] = "ignored"
    reason: str = ""


StreamEvent = Annotated[
    Union[
        SystemEvent,
        AssistantEvent,
        UserEvent,
        ResultEvent,
        ExitEvent,
        FollowUpEvent,
        TextDeltaEvent,
        IgnoredEvent,
    ],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter = TypeAdapter(StreamEvent)
_KNOWN_TYPES = {"system", "assistant", "user", "result", "exit", "user-follow-up", "content_block_delta"}


def parse_event(line: str) -> Any:
    """Validate one protocol line; never raises."""
    text = line.strip()
    if not text:
        return IgnoredEvent(reason="blank")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return IgnoredEvent(reason="not json")
    if not isinstance(payload, dict) or payload.get("type") not in _KNOWN_TYPES:
        return IgnoredEvent(reason="unknown event")
    try:
        return _EVENT_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        return IgnoredEvent(reason=f"invalid {payload.get('type')}: {exc.error_count()} errors")


def normalize_tool_result(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text") or ""))
            else:
                parts.append(json.dumps(item))
        return "\n".join(parts)
    return json.dumps(content) if content else ""


# -- render blocks ------------------------------------------------------------


@dataclass
class RenderBlock:
    id: str
    type: BlockType
    status: BlockStatus = "complete"
    text: str = ""
    thinking: str = ""
    tool_name: Optional[str] = None
    tool_input: dict[str, Any] = field(default_factory=dict)
    tool_use_id: Optional[str] = None
    tool_result: Optional[str] = None
    tool_error: bool = False
    cost_usd: Optional[float] = None
    duration_ms: Optional[float] = None
    num_turns: Optional[int] = None
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "type": self.type, "status": self.status}
        if self.type in ("text", "user-message"):
            data["text"] = self.text
        elif self.type == "thinking":
            data["thinking"] = self.thinking
        elif self.type == "tool-call":
            data.update(
                tool_name=self.tool_name,
                tool_input=self.tool_input,
                tool_use_id=self.tool_use_id,
                tool_result=self.tool_result,
                tool_error=self.tool_error,
            )
        elif self.type == "result":
            data.update(
                text=self.text,
                cost_usd=self.cost_usd,
                duration_ms=self.duration_ms,
                num_turns=self.num_turns,
                is_error=self.is_error,
            )
        return data


class StreamEventParser:
    """Incremental, order-preserving parser from protocol lines to blocks."""

    def __init__(self) -> None:
        self.blocks: list[RenderBlock] = []
        self.exited = False
        self.exit_code: Optional[int] = None
        self.session_id: Optional[str] = None
        self.got_valid_event = False
        self._counter = 0
        self._buffer = ""
        self._tool_blocks: dict[str, RenderBlock] = {}
        self._active_text: Optional[RenderBlock] = None
        self._text_from_delta = False
        self._pending_local: deque[str] = deque()

    def _next_id(self) -> str:
        self._counter += 1
        return f"block-{self._counter}"

    def _new_block(self, block_type: BlockType, **kwargs: Any) -> RenderBlock:
        block = RenderBlock(id=self._next_id(), type=block_type, **kwargs)
        self.blocks.append(block)
        return block

    def _finish_text(self) -> None:
        if self._active_text is not None:
            self._active_text.status = "complete"
        self._active_text = None
        self._text_from_delta = False

    # -- input ----------------------------------------------------------------

    def feed(self, chunk: str) -> list[RenderBlock]:
        """Consume raw output; a trailing partial line is held until the next call."""
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        touched: list[RenderBlock] = []
        for line in lines:
            touched.extend(self.feed_line(line))
        return touched

    def finish(self) -> list[RenderBlock]:
        """Flush any buffered partial line and close an open text block."""
        touched: list[RenderBlock] = []
        if self._buffer.strip():
            touched.extend(self.feed_line(self._buffer))
        self._buffer = ""
        self._finish_text()
        return touched

    def feed_line(self, line: str) -> list[RenderBlock]:
        event = parse_event(line)
        if isinstance(event, IgnoredEvent):
            if event.reason != "blank":
                logger.trace("Ignoring stream line: {}", event.reason)
            return []
        self.got_valid_event = True
        return self.handle(event)

    def handle(self, event: Any) -> list[RenderBlock]:
        if self.session_id is None:
            session_id = getattr(event, "session_id", None)
            if session_id:
                self.session_id = session_id

        if isinstance(event, TextDeltaEvent):
            return self._on_text_delta(event)
        if isinstance(event, AssistantEvent):
            return self._on_assistant(event)
        # Anything other than assistant text ends the current text run.
        self._finish_text()
        if isinstance(event, UserEvent):
            return self._on_user(event)
        if isinstance(event, ResultEvent):
            return [
                self._new_block(
                    "result",
                    text=event.result or "",
                    cost_usd=event.cost_usd if event.cost_usd is not None else event.total_cost_usd,
                    duration_ms=event.duration_ms,
                    num_turns=event.num_turns,
                    is_error=event.is_error,
                )
            ]
        if isinstance(event, ExitEvent):
            self.exited = True
            self.exit_code = event.code
            return []
        if isinstance(event, FollowUpEvent):
            return self._on_follow_up(event.message)
        return []

    def _on_text_delta(self, event: TextDeltaEvent) -> list[RenderBlock]:
        if event.delta.get("type") != "text_delta" or not event.delta.get("text"):
            return []
        if self._active_text is None:
            self._active_text = self._new_block("text", status="active")
            self._text_from_delta = True
        self._active_text.text += str(event.delta["text"])
        return [self._active_text]

    def _on_assistant(self, event: AssistantEvent) -> list[RenderBlock]:
        content = event.message.content
        if isinstance(content, str):
            content = [ContentItem(type="text", text=content)] if content else []
        touched: list[RenderBlock] = []
        # A full assistant message supersedes text streamed for it as deltas.
        replace_delta_text = self._text_from_delta
        for item in content:
            if item.type == "text" and item.text:
                if self._active_text is None:
                    self._active_text = self._new_block("text", status="active")
                if replace_delta_text:
                    self._active_text.text = item.text
                    replace_delta_text = False
                    self._text_from_delta = False
                else:
                    self._active_text.text += item.text
                if self._active_text not in touched:
                    touched.append(self._active_text)
            elif item.type == "thinking" and item.thinking:
                self._finish_text()
                touched.append(self._new_block("thinking", thinking=item.thinking))
            elif item.type == "tool_use" and item.id and item.name:
                self._finish_text()
                block = self._new_block(
                    "tool-call",
                    status="active",
                    tool_name=item.name,
                    tool_input=dict(item.input or {}),
                    tool_use_id=item.id,
                )
                self._tool_blocks[item.id] = block
                touched.append(block)
        self._finish_text()
        return touched

    def _on_user(self, event: UserEvent) -> list[RenderBlock]:
        content = event.message.content
        if isinstance(content, str):
            return []
        touched: list[RenderBlock] = []
        for item in content:
            if item.type != "tool_result" or not item.tool_use_id:
                continue
            block = self._tool_blocks.get(item.tool_use_id)
            if block is None:
                continue
            block.tool_result = normalize_tool_result(item.content)
            block.tool_error = item.is_error is True
            block.status = "complete"
            touched.append(block)
        return touched

    def _on_follow_up(self, message: str) -> list[RenderBlock]:
        if self._pending_local and self._pending_local[0] == message:
            self._pending_local.popleft()
            return []
        return [self._new_block("user-message", text=message)]

    # -- local additions --------------------------------------------------------

    def add_local_user_message(self, message: str) -> RenderBlock:
        """Show a message the local user just sent; its persisted echo is skipped once."""
        self._finish_text()
        self._pending_local.append(message)
        return self._new_block("user-message", text=message)

    def add_error(self, message: str) -> RenderBlock:
        self._finish_text()
        return self._new_block("result", text=message, is_error=True)

    # -- queries ------------------------------------------------------------------

    def final_result(self) -> Optional[RenderBlock]:
        for block in reversed(self.blocks):
            if block.type == "result":
                return block
        return None


def replay_lines(lines: Iterable[str]) -> StreamEventParser:
    parser = StreamEventParser()
    for line in lines:
        parser.feed_line(line)
    parser.finish()
    return parser


def replay_log(path: Path) -> StreamEventParser:
    """Rebuild the block list from a persisted stream log."""
    if not path.exists():
        return StreamEventParser()
    with open(path, "r", encoding="utf-8", errors="replace") as handle:
        return replay_lines(handle)


def first_session_id(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    with open(path, "r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict) and payload.get("session_id"):
                return str(payload["session_id"])
    return None


def render_blocks_text(blocks: Iterable[RenderBlock]) -> str:
    """Plain-text transcript of *blocks* for the task's ``agent_log`` field."""
    lines: list[str] = []
    for block in blocks:
        if block.type == "text":
            lines.append(block.text)
        elif block.type == "thinking":
            lines.append(f"[thinking] {block.thinking}")
        elif block.type == "tool-call":
            marker = "error" if block.tool_error else block.status
            lines.append(f"[tool {block.tool_name}] ({marker}) {json.dumps(block.tool_input)}")
        elif block.type == "user-message":
            lines.append(f"> {block.text}")
        elif block.type == "result":
            label = "error" if block.is_error else "result"
            lines.append(f"[{label}] {block.text}")
    return "\n".join(lines)
