"""Endpoint servers of the mesh node and the supervisor that runs them."""

from __future__ import annotations

import html
import logging
import ssl
import sys
import threading
import time
import traceback
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterable, Optional
from urllib.parse import parse_qs, urlparse

log = logging.getLogger(__name__)

_PREFIX = "/debug/pprof/"
_DEFAULT_PROFILE_SECONDS = 30.0
_DEFAULT_TRACE_SECONDS = 1.0
_SAMPLE_INTERVAL = 0.01
_JOIN_TIMEOUT = 5.0


class GracefulServer(ABC):
    """A server that can be run in the background and stopped cleanly."""

    @abstractmethod
    def serve(self) -> None:
        """Run the server loop; block until the server is stopped."""

    @abstractmethod
    def stop(self) -> None:
        """Stop the server; block until it has completely stopped."""


class Registry(ABC):
    """A service registry the mesh node announces itself to."""

    @abstractmethod
    def init(self) -> None:
        """Prepare the registry client."""

    @abstractmethod
    def find_event_mesh_info_by_cluster(self, cluster_name: str):
        """Look up the mesh nodes of ``cluster_name``."""

    @abstractmethod
    def start(self) -> None:
        """Begin registering."""

    @abstractmethod
    def shutdown(self) -> None:
        """Stop registering."""


@dataclass
class TCPOption:
    """Settings of the TCP endpoint."""

    port: int | str = 0


@dataclass
class PProfOption:
    """Settings of the debug profiling endpoint."""

    enable: bool = False
    port: int | str = 0
    certfile: Optional[str] = None
    keyfile: Optional[str] = None

    @property
    def tls_enabled(self) -> bool:
        return bool(self.certfile)


class TCPServer(GracefulServer):
    """The TCP endpoint; it accepts no traffic yet."""

    def __init__(self, option: TCPOption) -> None:
        self.option = option

    def serve(self) -> None:
        return None

    def stop(self) -> None:
        return None


def _parse_port(port: int | str) -> int:
    if isinstance(port, int):
        return port
    text = port.strip().lstrip(":")
    return int(text) if text else 0


def _seconds(query: dict[str, list[str]], default: float) -> float:
    try:
        value = float(query.get("seconds", [""])[0])
    except ValueError:
        return default
    return value if value > 0 else default


def _thread_stacks() -> str:
    names = {thread.ident: thread.name for thread in threading.enumerate()}
    lines: list[str] = []
    for ident, frame in sys._current_frames().items():
        lines.append(f"thread {ident} [{names.get(ident, '?')}]:")
        lines.extend(entry.rstrip("\n") for entry in traceback.format_stack(frame))
        lines.append("")
    return "\n".join(lines)


def _sample_profile(seconds: float) -> str:
    """Sample the running frame of every other thread for ``seconds``."""
    own = threading.get_ident()
    counts: Counter[tuple[str, str, int]] = Counter()
    samples = 0
    deadline = time.monotonic() + seconds
    while time.monotonic() < deadline:
        for ident, frame in sys._current_frames().items():
            if ident == own:
                continue
            code = frame.f_code
            counts[(code.co_name, code.co_filename, frame.f_lineno)] += 1
        samples += 1
        time.sleep(_SAMPLE_INTERVAL)
    lines = [f"samples: {samples}"]
    for (name, filename, lineno), count in counts.most_common():
        lines.append(f"{count} {name} {filename}:{lineno}")
    return "\n".join(lines) + "\n"


def _trace(seconds: float) -> str:
    """Record the live threads over ``seconds``."""
    start = time.monotonic()
    lines = []
    while True:
        elapsed = time.monotonic() - start
        names = sorted(thread.name for thread in threading.enumerate())
        lines.append(f"t=+{elapsed:.3f}s threads={len(names)} {','.join(names)}")
        if elapsed >= seconds:
            break
        time.sleep(_SAMPLE_INTERVAL)
    return "\n".join(lines) + "\n"


_NAMED_PROFILES = {
    "goroutine": ("stack traces of all current threads", _thread_stacks),
    "threadcreate": ("stack traces of all current threads", _thread_stacks),
}


def _index() -> str:
    rows = "\n".join(
        f'<a href="{name}?debug=1">{name}</a> {html.escape(desc)}<br>'
        for name, (desc, _) in sorted(_NAMED_PROFILES.items())
    )
    return (
        "<html><head><title>/debug/pprof/</title></head><body>\n"
        "/debug/pprof/<br>\n<br>\nProfile Descriptions:<br>\n"
        f"{rows}\n"
        '<a href="cmdline">cmdline</a> command line of the program<br>\n'
        '<a href="profile">profile</a> sampled CPU profile<br>\n'
        '<a href="trace">trace</a> thread activity trace<br>\n'
        "</body></html>\n"
    )


class _ProfileHandler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        log.debug("pprof: " + format, *args)

    def _reply(self, status: int, body: str, content_type: str = "text/plain; charset=utf-8") -> None:
        data = body.encode()
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _dispatch(self) -> None:
        parsed = urlparse(self.path)
        path = parsed.path
        query = parse_qs(parsed.query)
        if path == _PREFIX.rstrip("/"):
            self.send_response(301)
            self.send_header("Location", _PREFIX)
            self.send_header("Content-Length", "0")
            self.end_headers()
            return
        if not path.startswith(_PREFIX):
            self._reply(404, "404 page not found\n")
            return
        name = path[len(_PREFIX):]
        if name == "":
            self._reply(200, _index(), "text/html; charset=utf-8")
        elif name == "cmdline":
            self._reply(200, "\x00".join(sys.argv))
        elif name == "profile":
            self._reply(200, _sample_profile(_seconds(query, _DEFAULT_PROFILE_SECONDS)))
        elif name == "trace":
            self._reply(200, _trace(_seconds(query, _DEFAULT_TRACE_SECONDS)))
        elif name == "symbol":
            self._reply(200, "num_symbols: 1\n")
        elif name in _NAMED_PROFILES:
            self._reply(200, _NAMED_PROFILES[name][1]())
        else:
            self._reply(404, "Unknown profile\n")

    def do_GET(self) -> None:  # noqa: N802
        self._dispatch()

    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        if length:
            self.rfile.read(length)
        self._dispatch()


class PProfServer(GracefulServer):
    """HTTP server exposing runtime profiling data under /debug/pprof/."""

    def __init__(self, option: PProfOption) -> None:
        self.option = option
        self._httpd = ThreadingHTTPServer(("", _parse_port(option.port)), _ProfileHandler)
        self._httpd.daemon_threads = True
        if option.tls_enabled:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.load_cert_chain(option.certfile, option.keyfile)
            self._httpd.socket = context.wrap_socket(self._httpd.socket, server_side=True)
        self._lock = threading.Lock()
        self._serving = False
        self._closed = False

    @property
    def port(self) -> int:
        """The port the server is bound to."""
        return self._httpd.server_address[1]

    def serve(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._serving = True
        self._httpd.serve_forever()

    def stop(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            serving = self._serving
        if serving:
            self._httpd.shutdown()
        self._httpd.server_close()


class Server:
    """Runs a set of endpoint servers in the background."""

    def __init__(self, servers: Iterable[GracefulServer]) -> None:
        self.servers = list(servers)
        self._threads: list[threading.Thread] = []

    @staticmethod
    def _run(server: GracefulServer) -> None:
        try:
            server.serve()
        except Exception:  # noqa: BLE001 - one endpoint failing must not kill the node
            log.exception("server %r stopped with an error", server)

    def start(self) -> None:
        """Start every server in its own thread."""
        for server in self.servers:
            thread = threading.Thread(target=self._run, args=(server,), daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        """Stop every server, last started first; raise the first failure."""
        errors: list[Exception] = []
        for server in reversed(self.servers):
            try:
                server.stop()
            except Exception as err:  # noqa: BLE001 - stop the others too
                log.warning("failed to stop server %r, err:%s", server, err)
                errors.append(err)
        for thread in self._threads:
            thread.join(_JOIN_TIMEOUT)
        self._threads.clear()
        if errors:
            raise errors[0]

    def __enter__(self) -> Server:
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()


def start(tcp_option: Optional[TCPOption] = None,
          pprof_option: Optional[PProfOption] = None) -> Server:
    """Create the configured servers and start them.

    If creating one fails, the ones already created are stopped.
    """
    servers: list[GracefulServer] = []
    try:
        if tcp_option is not None:
            servers.append(TCPServer(tcp_option))
        if pprof_option is not None and pprof_option.enable:
            servers.append(PProfServer(pprof_option))
    except BaseException:
        for server in servers:
            try:
                server.stop()
            except Exception as err:  # noqa: BLE001
                log.warning("failed to stop server %r, err:%s", server, err)
        raise
    supervisor = Server(servers)
    supervisor.start()
    return supervisor