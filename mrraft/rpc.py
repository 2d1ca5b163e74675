"""A small multiplexed request/reply RPC layer over TCP.

Requests name a method as ``"Service.method"``; the server calls
``method(args)`` on the object registered as ``Service`` and sends back
whatever it returns. Several calls may be in flight on one connection.
"""

from __future__ import annotations

import itertools
import pickle
import socket
import struct
import threading
from typing import Any

_HEADER = struct.Struct(">I")
_ACCEPT_POLL = 0.2


class RpcError(Exception):
    """A call failed: unreachable peer, closed connection or remote error."""


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid address {address!r}")
    return host, int(port)


def _recv_exact(sock: socket.socket, size: int) -> bytes | None:
    buffer = bytearray()
    while len(buffer) < size:
        chunk = sock.recv(size - len(buffer))
        if not chunk:
            if not buffer:
                return None
            raise ConnectionError("connection closed in the middle of a frame")
        buffer += chunk
    return bytes(buffer)


def _read_frame(sock: socket.socket) -> Any:
    """Read one frame; ``None`` means the peer closed the connection."""
    header = _recv_exact(sock, _HEADER.size)
    if header is None:
        return None
    (length,) = _HEADER.unpack(header)
    body = _recv_exact(sock, length)
    if body is None:
        raise ConnectionError("connection closed before frame body")
    return pickle.loads(body)


def _encode_frame(obj: Any) -> bytes:
    data = pickle.dumps(obj, protocol=pickle.HIGHEST_PROTOCOL)
    return _HEADER.pack(len(data)) + data


def _shutdown(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


class RpcServer:
    """Serves registered objects to :class:`RpcClient` connections."""

    def __init__(self, address: str) -> None:
        self._requested = address
        self._services: dict[str, Any] = {}
        self._lock = threading.Lock()
        self._connections: set[socket.socket] = set()
        self._listener: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None
        self._closed = threading.Event()

    @property
    def address(self) -> str:
        """The bound ``host:port`` once started, else the requested one."""
        if self._listener is None:
            return self._requested
        host, port = self._listener.getsockname()[:2]
        return f"{host}:{port}"

    def register(self, name: str, obj: Any) -> None:
        if not name or "." in name:
            raise ValueError(f"invalid service name {name!r}")
        with self._lock:
            if name in self._services:
                raise ValueError(f"service {name!r} already registered")
            self._services[name] = obj

    def start(self) -> None:
        """Bind and listen, then accept connections in the background."""
        if self._listener is not None:
            raise RuntimeError("server already started")
        if self._closed.is_set():
            raise RuntimeError("server is closed")
        host, port = _split_address(self._requested)
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((host, port))
            listener.listen()
            listener.settimeout(_ACCEPT_POLL)
        except OSError:
            listener.close()
            raise
        self._listener = listener
        self._accept_thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._accept_thread.start()

    def close(self) -> None:
        """Stop listening and drop every open connection."""
        if self._closed.is_set():
            return
        self._closed.set()
        if self._listener is not None:
            self._listener.close()
        with self._lock:
            connections = list(self._connections)
            self._connections.clear()
        for conn in connections:
            _shutdown(conn)
        if self._accept_thread is not None:
            self._accept_thread.join(timeout=2 * _ACCEPT_POLL + 1)

    def __enter__(self) -> RpcServer:
        if self._listener is None:
            self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _accept_loop(self) -> None:
        assert self._listener is not None
        while not self._closed.is_set():
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(None)
            with self._lock:
                if self._closed.is_set():
                    conn.close()
                    break
                self._connections.add(conn)
            threading.Thread(target=self._serve_connection, args=(conn,), daemon=True).start()

    def _serve_connection(self, conn: socket.socket) -> None:
        write_lock = threading.Lock()
        try:
            while True:
                request = _read_frame(conn)
                if request is None:
                    break
                seq, method, args = request
                threading.Thread(
                    target=self._respond,
                    args=(conn, write_lock, seq, method, args),
                    daemon=True,
                ).start()
        except (OSError, EOFError, pickle.UnpicklingError, ValueError, TypeError):
            pass
        finally:
            with self._lock:
                self._connections.discard(conn)
            _shutdown(conn)

    def _respond(self, conn, write_lock, seq, method, args) -> None:
        reply: Any = None
        error = ""
        try:
            reply = self._dispatch(method, args)
        except RpcError as exc:
            error = str(exc)
        except Exception as exc:  # a remote failure is reported to the caller
            error = f"{type(exc).__name__}: {exc}"
        try:
            frame = _encode_frame((seq, error, reply))
        except Exception as exc:
            frame = _encode_frame((seq, f"rpc: cannot encode reply: {exc}", None))
        with write_lock:
            try:
                conn.sendall(frame)
            except OSError:
                pass

    def _dispatch(self, method: Any, args: Any) -> Any:
        if not isinstance(method, str):
            raise RpcError(f"rpc: service/method request ill-formed: {method!r}")
        service_name, dot, method_name = method.partition(".")
        if not dot or not service_name or not method_name:
            raise RpcError(f"rpc: service/method request ill-formed: {method}")
        with self._lock:
            service = self._services.get(service_name)
        if service is None:
            raise RpcError(f"rpc: can't find service {method}")
        handler = None if method_name.startswith("_") else getattr(service, method_name, None)
        if not callable(handler):
            raise RpcError(f"rpc: can't find method {method}")
        return handler(args)


class _Pending:
    __slots__ = ("event", "reply", "error")

    def __init__(self) -> None:
        self.event = threading.Event()
        self.reply: Any = None
        self.error = ""


class RpcClient:
    """A connection to an :class:`RpcServer`; safe to use from many threads."""

    _SHUT_DOWN = "connection is shut down"

    def __init__(self, address: str) -> None:
        host, port = _split_address(address)
        try:
            self._sock = socket.create_connection((host, port))
        except OSError as exc:
            raise RpcError(f"dial {address}: {exc}") from exc
        self._address = address
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._pending: dict[int, _Pending] = {}
        self._seq = itertools.count()
        self._closed = False
        self._reader = threading.Thread(target=self._read_loop, daemon=True)
        self._reader.start()

    def call(self, method: str, args: Any) -> Any:
        """Invoke ``method`` remotely and return its reply."""
        waiter = _Pending()
        with self._lock:
            if self._closed:
                raise RpcError(self._SHUT_DOWN)
            seq = next(self._seq)
            self._pending[seq] = waiter
        try:
            frame = _encode_frame((seq, method, args))
        except Exception as exc:
            with self._lock:
                self._pending.pop(seq, None)
            raise RpcError(f"rpc: cannot encode request: {exc}") from exc
        try:
            with self._write_lock:
                self._sock.sendall(frame)
        except OSError as exc:
            with self._lock:
                self._pending.pop(seq, None)
            raise RpcError(self._SHUT_DOWN) from exc
        waiter.event.wait()
        if waiter.error:
            raise RpcError(waiter.error)
        return waiter.reply

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        _shutdown(self._sock)
        self._fail_pending()

    def __enter__(self) -> RpcClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _read_loop(self) -> None:
        try:
            while True:
                response = _read_frame(self._sock)
                if response is None:
                    break
                seq, error, reply = response
                with self._lock:
                    waiter = self._pending.pop(seq, None)
                if waiter is not None:
                    waiter.reply = reply
                    waiter.error = error
                    waiter.event.set()
        except (OSError, EOFError, pickle.UnpicklingError, ValueError, TypeError):
            pass
        with self._lock:
            self._closed = True
        self._fail_pending()

    def _fail_pending(self) -> None:
        with self._lock:
            waiters = list(self._pending.values())
            self._pending.clear()
        for waiter in waiters:
            waiter.error = self._SHUT_DOWN
            waiter.event.set()