"""Spawn and supervise one external agent process.

Output is exposed as a lazy, single-pass sequence of text chunks.  A reader
thread pulls stdout into a bounded queue (so a slow consumer stalls the child
rather than growing memory) and a second thread drains stderr into a bounded
tail buffer, so a chatty stderr can never block the child while we wait on
stdout.
"""

from __future__ import annotations

import codecs
import os
import queue
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional

from loguru import logger

from ..constants import DEFAULT_STDERR_TAIL_BYTES, STRIPPED_ENV_PREFIXES, STRIPPED_ENV_VARS

READ_CHUNK_BYTES = 4096
QUEUE_MAX_CHUNKS = 64
STDERR_ERROR_CHARS = 500
TERMINATE_GRACE_SECONDS = 5

_EOF = object()


class AgentSpawnError(RuntimeError):
    """The agent binary could not be started at all."""


def sanitized_env(base: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    """Copy *base* (default ``os.environ``) without nested-session and port variables."""
    source = os.environ if base is None else base
    return {
        key: value
        for key, value in source.items()
        if key not in STRIPPED_ENV_VARS and not key.startswith(STRIPPED_ENV_PREFIXES)
    }


class CancellationToken:
    """Cooperative cancellation shared by a process and any related calls."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                logger.warning("Cancellation callback failed: {}", exc)

    def add_callback(self, callback: Callable[[], Any]) -> None:
        """Register *callback*; it runs immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], Any]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass
class AgentRunResult:
    exit_code: int
    cancelled: bool = False
    error: Optional[str] = None
    stderr_tail: str = ""
    runtime_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


def _read_chunk(stream: Any) -> bytes:
    # read1 returns as soon as any bytes are available.
    if hasattr(stream, "read1"):
        return stream.read1(READ_CHUNK_BYTES)
    return stream.read(READ_CHUNK_BYTES)


class _TailBuffer:
    def __init__(self, limit: int) -> None:
        self.limit = max(1, limit)
        self._data = bytearray()
        self._lock = threading.Lock()

    def feed(self, chunk: bytes) -> None:
        with self._lock:
            self._data += chunk
            if len(self._data) > self.limit:
                del self._data[: len(self._data) - self.limit]

    def text(self) -> str:
        with self._lock:
            return self._data.decode("utf-8", errors="replace")


class AgentRun:
    """Handle on one spawned agent process."""

    def __init__(
        self,
        process: subprocess.Popen,
        *,
        token: Optional[CancellationToken] = None,
        stderr_tail_bytes: int = DEFAULT_STDERR_TAIL_BYTES,
    ) -> None:
        self.process = process
        self.token = token or CancellationToken()
        self.started = time.monotonic()
        self._queue: queue.Queue = queue.Queue(maxsize=QUEUE_MAX_CHUNKS)
        self._stderr = _TailBuffer(stderr_tail_bytes)
        self._consumed = False
        self._cancelled = False
        self._result: Optional[AgentRunResult] = None
        self._result_lock = threading.Lock()

        self._stdout_thread = threading.Thread(target=self._pump_stdout, name=f"agent-stdout-{process.pid}", daemon=True)
        self._stderr_thread = threading.Thread(target=self._drain_stderr, name=f"agent-stderr-{process.pid}", daemon=True)
        self._stdout_thread.start()
        self._stderr_thread.start()
        self.token.add_callback(self.terminate)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return self.process.poll() is None

    def _pump_stdout(self) -> None:
        stream = self.process.stdout
        try:
            if stream is None:
                return
            while True:
                chunk = _read_chunk(stream)
                if not chunk:
                    break
                self._queue.put(chunk)
        except (OSError, ValueError) as exc:
            logger.debug("Agent stdout closed for pid {}: {}", self.pid, exc)
        finally:
            self._queue.put(_EOF)

    def _drain_stderr(self) -> None:
        stream = self.process.stderr
        if stream is None:
            return
        try:
            for chunk in iter(lambda: _read_chunk(stream), b""):
                self._stderr.feed(chunk)
        except (OSError, ValueError) as exc:
            logger.debug("Agent stderr closed for pid {}: {}", self.pid, exc)

    def chunks(self) -> Iterator[str]:
        """Yield decoded stdout chunks until the process closes stdout.

        The sequence is single-pass: a second call raises ``RuntimeError``.
        """
        if self._consumed:
            raise RuntimeError("Agent output has already been consumed")
        self._consumed = True
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            item = self._queue.get()
            if item is _EOF:
                break
            text = decoder.decode(item)
            if text:
                yield text
        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail

    def lines(self) -> Iterator[str]:
        """Yield complete stdout lines (without newline), buffering partial lines across reads."""
        buffer = ""
        for chunk in self.chunks():
            buffer += chunk
            parts = buffer.split("\n")
            buffer = parts.pop()
            for part in parts:
                yield part
        if buffer:
            yield buffer

    def terminate(self) -> None:
        """Ask the process to stop; escalates to kill after a grace period."""
        self._cancelled = True
        if self.process.poll() is not None:
            return
        logger.info("Terminating agent pid {}", self.pid)
        try:
            self.process.terminate()
            self.process.wait(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            self.process.kill()
        except OSError as exc:
            logger.warning("Unable to terminate agent pid {}: {}", self.pid, exc)

    def wait(self, timeout: Optional[float] = None) -> AgentRunResult:
        """Wait for exit and return the result; stdout is drained if nobody consumed it."""
        with self._result_lock:
            if self._result is not None:
                return self._result
            if not self._consumed:
                for _ in self.chunks():
                    pass
            exit_code = self.process.wait(timeout=timeout)
            self._stdout_thread.join(timeout=TERMINATE_GRACE_SECONDS)
            self._stderr_thread.join(timeout=TERMINATE_GRACE_SECONDS)
            self.token.remove_callback(self.terminate)

            cancelled = self._cancelled or self.token.cancelled
            stderr_tail = self._stderr.text()
            error = None
            if exit_code != 0 and not cancelled:
                error = stderr_tail.strip()[:STDERR_ERROR_CHARS] or f"Process exited with code {exit_code}"
            self._result = AgentRunResult(
                exit_code=exit_code,
                cancelled=cancelled,
                error=error,
                stderr_tail=stderr_tail,
                runtime_seconds=time.monotonic() - self.started,
            )
            return self._result


class AgentProcessRunner:
    def __init__(self, stderr_tail_bytes: int = DEFAULT_STDERR_TAIL_BYTES) -> None:
        self.stderr_tail_bytes = stderr_tail_bytes

    def run(
        self,
        command: str,
        args: list[str],
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> AgentRun:
        """Spawn *command* with *args* in *cwd* and return its running handle.

        Raises:
            AgentSpawnError: if the binary cannot be started.
        """
        token = token or CancellationToken()
        if token.cancelled:
            raise AgentSpawnError("Cancelled before the agent was started")
        try:
            process = subprocess.Popen(
                [command, *args],
                cwd=str(cwd),
                env=sanitized_env(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            logger.error("Failed to spawn {}: {}", command, exc)
            raise AgentSpawnError(f"Failed to spawn {command}: {exc}") from exc
        logger.info("Spawned agent pid {} in {}", process.pid, cwd)
        return AgentRun(process, token=token, stderr_tail_bytes=self.stderr_tail_bytes)
