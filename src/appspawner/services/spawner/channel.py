"""Newline-delimited JSON messages over a Unix stream socket.

Every endpoint between the spawner and its children is one of these: the
preloader control socket (which also carries worker sockets as ``SCM_RIGHTS``
ancillary data) and each worker's request channel.
"""

from __future__ import annotations

import json
import os
import select
import socket
import threading
import time
from collections import deque
from typing import Any, Deque, List, Optional, Tuple

from appspawner.config.const import WAIT_SLICE_SEC

_RECV_BUF = 65536
_MAX_FDS = 4


class ChannelClosed(ConnectionError):
    """The peer closed its end (usually: the child process exited)."""


class ChannelTimeout(TimeoutError):
    pass


class ChannelCancelled(Exception):
    pass


class Channel:
    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self._buf = bytearray()
        self._fds: Deque[int] = deque()
        self._closed = False

    @classmethod
    def pair(cls) -> Tuple["Channel", socket.socket]:
        """Our channel plus the raw socket destined for a child."""
        ours, theirs = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
        return cls(ours), theirs

    @classmethod
    def from_fd(cls, fd: int) -> "Channel":
        return cls(socket.socket(fileno=fd))

    def fileno(self) -> int:
        return self.sock.fileno()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self._fds:
            _close_fd(self._fds.popleft())
        try:
            self.sock.close()
        except OSError:
            pass

    # ---------- sending ----------

    def send(self, message: dict, fds: Optional[List[int]] = None) -> None:
        data = json.dumps(message, default=str).encode("utf-8") + b"\n"
        try:
            if fds:
                # ancillary data rides on the first byte; send the remainder normally
                sent = socket.send_fds(self.sock, [data], fds)
                if sent < len(data):
                    self.sock.sendall(data[sent:])
            else:
                self.sock.sendall(data)
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ChannelClosed(str(e)) from e

    # ---------- receiving ----------

    def recv(
        self,
        timeout: Optional[float] = None,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> dict:
        """Block for the next message.

        Raises ChannelTimeout, ChannelCancelled or ChannelClosed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            line = self._pop_line()
            if line is not None:
                return json.loads(line)
            if cancel is not None and cancel.is_set():
                raise ChannelCancelled()
            wait = WAIT_SLICE_SEC if cancel is not None else None
            if deadline is not None:
                left = deadline - time.monotonic()
                if left <= 0:
                    raise ChannelTimeout(f"no message within {timeout:.2f}s")
                wait = left if wait is None else min(wait, left)
            if not self._wait_readable(wait):
                continue
            self._fill()

    def recv_with_fds(self, timeout: Optional[float] = None) -> Tuple[dict, List[int]]:
        message = self.recv(timeout)
        fds = list(self._fds)
        self._fds.clear()
        return message, fds

    def _wait_readable(self, wait: Optional[float]) -> bool:
        try:
            ready, _, _ = select.select([self.sock], [], [], wait)
        except InterruptedError:
            return False
        return bool(ready)

    def _fill(self) -> None:
        try:
            data, fds, _flags, _addr = socket.recv_fds(self.sock, _RECV_BUF, _MAX_FDS)
        except ConnectionResetError as e:
            raise ChannelClosed(str(e)) from e
        self._fds.extend(fds)
        if not data:
            raise ChannelClosed("peer closed the channel")
        self._buf.extend(data)

    def _pop_line(self) -> Optional[bytes]:
        idx = self._buf.find(b"\n")
        if idx < 0:
            return None
        line = bytes(self._buf[:idx])
        del self._buf[: idx + 1]
        return line


def _close_fd(fd: int) -> None:
    try:
        os.close(fd)
    except OSError:
        pass


def request(channel: Channel, payload: Any, *, request_id: int, timeout: Optional[float] = None) -> dict:
    channel.send({"op": "request", "id": request_id, "payload": payload})
    reply = channel.recv(timeout)
    if reply.get("id") != request_id:
        raise ChannelClosed(f"out-of-order reply: expected id {request_id}, got {reply.get('id')!r}")
    return reply
