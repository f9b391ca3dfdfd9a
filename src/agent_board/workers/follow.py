"""Follow a live agent stream re-broadcast over a Unix socket."""

from __future__ import annotations

import socket
import time
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from ..constants import LIVE_MAX_RETRIES
from .process import CancellationToken
from .stream import RenderBlock, StreamEventParser

RECV_BYTES = 4096


def reconnect_delay(attempt: int) -> float:
    return min(1.0 + 0.5 * attempt, 5.0)


def _connect_unix(path: Path) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.connect(str(path))
    except OSError:
        sock.close()
        raise
    return sock


class LiveStreamFollower:
    """Viewer that reconnects until the stream yields a valid event.

    The bridge socket may not exist yet when the viewer starts, so connection
    failures and early closes are retried with a growing delay.  Once any
    valid event has been parsed, a close is final.  Attempts reset whenever
    data arrives.
    """

    def __init__(
        self,
        socket_path: Path,
        parser: Optional[StreamEventParser] = None,
        *,
        on_blocks: Optional[Callable[[list[RenderBlock]], None]] = None,
        token: Optional[CancellationToken] = None,
        max_retries: int = LIVE_MAX_RETRIES,
        connect: Callable[[Path], socket.socket] = _connect_unix,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.parser = parser or StreamEventParser()
        self.on_blocks = on_blocks
        self.token = token or CancellationToken()
        self.max_retries = max_retries
        self.attempts_made = 0
        self._connect = connect
        self._sleep = sleep

    def _pump(self, sock: socket.socket) -> bool:
        """Read until the peer closes; returns True if any data arrived."""
        got_data = False
        decoder_buffer = b""
        with sock:
            while not self.token.cancelled:
                data = sock.recv(RECV_BYTES)
                if not data:
                    break
                got_data = True
                decoder_buffer += data
                try:
                    text = decoder_buffer.decode("utf-8")
                    decoder_buffer = b""
                except UnicodeDecodeError:
                    # Wait for the rest of a split multi-byte character.
                    continue
                touched = self.parser.feed(text)
                if touched and self.on_blocks:
                    self.on_blocks(touched)
        return got_data

    def run(self) -> StreamEventParser:
        attempt = 0
        while not self.token.cancelled:
            self.attempts_made += 1
            try:
                sock = self._connect(self.socket_path)
            except OSError as exc:
                logger.debug("Live stream {} not ready: {}", self.socket_path, exc)
            else:
                try:
                    if self._pump(sock):
                        attempt = 0
                except OSError as exc:
                    logger.debug("Live stream {} dropped: {}", self.socket_path, exc)
            if self.token.cancelled or self.parser.exited or self.parser.got_valid_event:
                break
            if attempt >= self.max_retries:
                logger.warning("Giving up on live stream {} after {} retries", self.socket_path, attempt)
                break
            attempt += 1
            self._sleep(reconnect_delay(attempt))
        touched = self.parser.finish()
        if touched and self.on_blocks:
            self.on_blocks(touched)
        return self.parser
