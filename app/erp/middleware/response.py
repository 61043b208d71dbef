"""
Response interception for WSGI.

WrappedResponse sits between the application and the server's start_response.
It records the status the application sets, lets middleware put headers on the
response before the handler runs, optionally tees the body, and exposes the
server's flush/upgrade capabilities only when the server actually has them.
"""
from __future__ import annotations

import io
import socket
from collections.abc import Callable, Iterable, Iterator
from typing import Any, Protocol, runtime_checkable

from werkzeug.datastructures import Headers

from app.erp.middleware.bodylog import should_log_body

StartResponse = Callable[..., Callable[[bytes], Any]]

DEFAULT_STATUS = 200


class UpgradeNotSupported(RuntimeError):
    """Raised when the underlying response cannot hand over the raw connection."""


@runtime_checkable
class Flusher(Protocol):
    def flush(self) -> None: ...


@runtime_checkable
class Upgrader(Protocol):
    def upgrade(self) -> socket.socket: ...


class SocketUpgrader:
    """Upgrader backed by the server socket a WSGI server puts in the environ."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    def upgrade(self) -> socket.socket:
        return self._sock


# Servers that hand the raw client socket to the application.
_SOCKET_ENVIRON_KEYS = ("werkzeug.socket", "gunicorn.socket")


class WrappedResponse:
    def __init__(
        self,
        start_response: StartResponse,
        *,
        flusher: Flusher | None = None,
        upgrader: Upgrader | None = None,
        capture_body: bool = False,
        capture_types: Iterable[str] | None = None,
        file_wrapper: type | None = None,
    ) -> None:
        self._start_response = start_response
        self._flusher = flusher
        self._upgrader = upgrader
        self._capture_body = capture_body
        # None captures every content type.
        self._capture_types = tuple(capture_types) if capture_types is not None else None
        self._file_wrapper = file_wrapper
        self._status_code: int | None = None
        self._started = False
        self._buffer: io.BytesIO | None = io.BytesIO() if capture_body else None
        self._server_write: Callable[[bytes], Any] | None = None
        self.headers = Headers()
        self._preset: Headers | None = None

    @classmethod
    def wrap(
        cls,
        environ: dict,
        start_response: StartResponse,
        *,
        capture_body: bool = False,
        capture_types: Iterable[str] | None = None,
    ) -> "WrappedResponse":
        """Resolve the sink's capabilities once and wrap it."""
        flusher = start_response if isinstance(start_response, Flusher) else None
        upgrader: Upgrader | None = start_response if isinstance(start_response, Upgrader) else None
        if upgrader is None:
            for key in _SOCKET_ENVIRON_KEYS:
                sock = environ.get(key)
                if sock is not None:
                    upgrader = SocketUpgrader(sock)
                    break
        file_wrapper = environ.get("wsgi.file_wrapper")
        return cls(
            start_response,
            flusher=flusher,
            upgrader=upgrader,
            capture_body=capture_body,
            capture_types=capture_types,
            file_wrapper=file_wrapper if isinstance(file_wrapper, type) else None,
        )

    # ---------- WSGI contract ----------
    def start_response(self, status: str, headers: list[tuple[str, str]], exc_info: Any = None) -> Callable[[bytes], Any]:
        self._status_code = int(status.split(" ", 1)[0])
        if self._preset is None:
            self._preset = self.headers
        sent = Headers(headers)
        # A restart with exc_info only inherits the middleware's own headers.
        for key, value in self._preset.items():
            if key not in sent:
                sent.add(key, value)
        self.headers = sent
        self._started = True
        if self._capture_types is not None and not should_log_body(sent.get("Content-Type"), self._capture_types):
            self._buffer = None
        elif self._capture_body and self._buffer is None and exc_info is not None:
            self._buffer = io.BytesIO()
        self._server_write = self._start_response(status, sent.to_wsgi_list(), exc_info)
        return self.write

    def write(self, data: bytes) -> None:
        if self._server_write is None:
            raise RuntimeError("write() called before start_response()")
        if self._buffer is not None:
            self._buffer.write(data)
        self._server_write(data)

    def wrap_body(self, app_iter: Iterable[bytes]) -> Iterable[bytes]:
        """Return the body iterable, teeing it into the capture buffer when possible."""
        if self._buffer is None:
            return app_iter
        if self._file_wrapper is not None and isinstance(app_iter, self._file_wrapper):
            # The server streams files itself; nothing passes through us to read back.
            self._buffer = None
            return app_iter
        return self._tee(app_iter)

    def _tee(self, app_iter: Iterable[bytes]) -> Iterator[bytes]:
        for chunk in app_iter:
            if self._buffer is not None:
                self._buffer.write(chunk)
            yield chunk

    # ---------- queries ----------
    @property
    def started(self) -> bool:
        return self._started

    def status(self) -> int:
        return self._status_code if self._status_code is not None else DEFAULT_STATUS

    def body(self) -> bytes | None:
        """Captured body, or None when the body could not be observed."""
        if self._buffer is None:
            return None
        return self._buffer.getvalue()

    # ---------- capabilities ----------
    @property
    def can_flush(self) -> bool:
        return self._flusher is not None

    @property
    def can_upgrade(self) -> bool:
        return self._upgrader is not None

    def flush(self) -> None:
        if self._flusher is not None:
            self._flusher.flush()

    def upgrade(self) -> socket.socket:
        if self._upgrader is None:
            raise UpgradeNotSupported("underlying response does not support upgrade")
        return self._upgrader.upgrade()
