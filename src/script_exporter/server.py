"""HTTP surface of the exporter.

Routes:
  GET /                        -> HTML landing page
  GET {telemetry_path}         -> the exporter's own operational metrics
  GET {telemetry_path}/<name>  -> run script <name> and expose its output
"""

from __future__ import annotations

import html
import logging
import select
import socket
import threading
from collections.abc import Callable
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import unquote, urlsplit

from prometheus_client import CONTENT_TYPE_LATEST

from .assemble import build_registry, render
from .errors import (
    AdmissionRejected,
    Cancelled,
    ExporterError,
    InvalidScript,
    ParseError,
    ServeError,
)
from .execution.dispatcher import CommandRunner, Dispatcher
from .execution.process import run_command
from .execution.types import CancelToken
from .metrics import ExporterMetrics
from .settings import ExporterSettings

logger = logging.getLogger(__name__)

_DISCONNECT_POLL_SECONDS = 0.1

_LANDING_PAGE = """<html>
<head><title>Script Exporter</title></head>
<body>
<h1>Script Exporter</h1>
<p><a href="{path}">Metrics</a></p>
</body>
</html>
"""


def status_for_error(error: ExporterError) -> HTTPStatus:
    """Map an exporter error onto the HTTP status returned to the scraper.

    Example:
        ```python
        status_for_error(AdmissionRejected("busy"))  # HTTPStatus.SERVICE_UNAVAILABLE
        ```
    """
    if isinstance(error, InvalidScript):
        return HTTPStatus.NOT_FOUND
    if isinstance(error, AdmissionRejected):
        return HTTPStatus.SERVICE_UNAVAILABLE
    if isinstance(error, Cancelled):
        return HTTPStatus.GATEWAY_TIMEOUT
    return HTTPStatus.INTERNAL_SERVER_ERROR


def _cancel_on_disconnect(conn: socket.socket, token: CancelToken, finished: threading.Event) -> None:
    """Cancel `token` if the client closes its connection before `finished` is set.

    Bytes pipelined after the request end the watch without cancelling.

    Example:
        ```python
        threading.Thread(target=_cancel_on_disconnect, args=(conn, token, finished), daemon=True).start()
        ```
    """
    while not finished.is_set() and not token.done():
        try:
            readable, _, _ = select.select([conn], [], [], _DISCONNECT_POLL_SECONDS)
        except (OSError, ValueError):
            return
        if not readable:
            continue
        try:
            pending = conn.recv(1, socket.MSG_PEEK)
        except OSError:
            pending = b""
        if not pending and not finished.is_set():
            logger.info("client disconnected, cancelling script run")
            token.cancel()
        return


class _ExporterHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, address: tuple[str, int], exporter: "ExporterServer") -> None:
        """Bind the listening socket and remember the owning exporter.

        Example:
            ```python
            httpd = _ExporterHTTPServer(("127.0.0.1", 0), exporter)
            ```
        """
        self.exporter = exporter
        super().__init__(address, _ScriptHandler)


class _ScriptHandler(BaseHTTPRequestHandler):
    server: _ExporterHTTPServer
    timeout = 5
    server_version = "script-exporter"

    def do_GET(self) -> None:
        """Route one GET request.

        Example:
            ```python
            # invoked by http.server for every GET
            ```
        """
        exporter = self.server.exporter
        prefix = exporter.settings.telemetry_path
        path = unquote(urlsplit(self.path).path)
        if path == "/":
            body = _LANDING_PAGE.format(path=html.escape(prefix, quote=True)).encode("utf-8")
            self._reply(HTTPStatus.OK, body, "text/html; charset=utf-8")
            return
        if path == prefix:
            self._reply_metrics(exporter.metrics_body)
            return
        if path.startswith(prefix + "/"):
            script = path[len(prefix) + 1 :]
            if not script:
                self._reply_metrics(exporter.metrics_body)
                return
            self._reply_metrics(lambda: self._scrape(script))
            return
        self._reply(HTTPStatus.NOT_FOUND, b"not found\n", "text/plain; charset=utf-8")

    def log_message(self, format: str, *args: Any) -> None:
        """Send access logs to the module logger instead of stderr.

        Example:
            ```python
            handler.log_message("%s", "GET /metrics")
            ```
        """
        logger.debug("%s - %s", self.address_string(), format % args)

    def _scrape(self, script: str) -> bytes:
        """Scrape `script` under a token that also fires when the client hangs up.

        Example:
            ```python
            body = self._scrape("probe.sh")
            ```
        """
        exporter = self.server.exporter
        token = CancelToken.with_timeout(exporter.settings.timeout_seconds)
        finished = threading.Event()
        watcher = threading.Thread(
            target=_cancel_on_disconnect,
            args=(self.connection, token, finished),
            name="script-exporter-disconnect",
            daemon=True,
        )
        watcher.start()
        try:
            return exporter.scrape(script, token)
        finally:
            finished.set()
            watcher.join()

    def _reply_metrics(self, produce: Callable[[], bytes]) -> None:
        """Reply with exposition text or with the status matching the error.

        Example:
            ```python
            self._reply_metrics(exporter.metrics_body)
            ```
        """
        try:
            body = produce()
        except ExporterError as exc:
            self._reply(status_for_error(exc), f"{exc}\n".encode("utf-8"), "text/plain; charset=utf-8")
            return
        except Exception:
            logger.exception("unexpected failure serving %s", self.path)
            self._reply(HTTPStatus.INTERNAL_SERVER_ERROR, b"internal error\n", "text/plain; charset=utf-8")
            return
        self._reply(HTTPStatus.OK, body, CONTENT_TYPE_LATEST)

    def _reply(self, status: HTTPStatus, body: bytes, content_type: str) -> None:
        """Write a complete response.

        Example:
            ```python
            self._reply(HTTPStatus.OK, b"ok\\n", "text/plain")
            ```
        """
        try:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
        except (BrokenPipeError, ConnectionResetError) as exc:
            self.close_connection = True
            logger.debug("client went away before the %d reply: %s", status, exc)


class ExporterServer:
    """Wire settings, operational metrics, dispatcher and HTTP listener together.

    Example:
        ```python
        server = ExporterServer(ExporterSettings(script_path="/opt/scripts"))
        server.start()
        server.serve_forever()
        ```
    """

    def __init__(
        self,
        settings: ExporterSettings,
        *,
        metrics: ExporterMetrics | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        """Build the dispatcher; nothing is bound until `start()`.

        Example:
            ```python
            server = ExporterServer(ExporterSettings(listen_address="127.0.0.1:0"))
            ```
        """
        self.settings = settings
        self.metrics = metrics if metrics is not None else ExporterMetrics()
        self.dispatcher = Dispatcher(
            settings.script_path,
            metrics=self.metrics,
            max_per_script=settings.script_workers,
            runner=runner if runner is not None else run_command,
            kill_process_group=settings.kill_process_group,
        )
        self._httpd: _ExporterHTTPServer | None = None
        self._serve_thread: threading.Thread | None = None

    @property
    def server_address(self) -> tuple[str, int]:
        """Return the bound `(host, port)`, useful after binding port 0.

        Example:
            ```python
            host, port = server.server_address
            ```
        """
        if self._httpd is None:
            raise RuntimeError("server is not started")
        host, port = self._httpd.server_address[:2]
        return str(host), int(port)

    def metrics_body(self) -> bytes:
        """Render the exporter's own operational metrics.

        Example:
            ```python
            body = server.metrics_body()
            ```
        """
        return render(self.metrics.registry)

    def scrape(self, script: str, token: CancelToken | None = None) -> bytes:
        """Run `script` once and render its output as exposition text.

        Without a `token` the run is bounded by the configured timeout only.

        Example:
            ```python
            body = server.scrape("probe.sh")
            ```
        """
        if token is None:
            token = CancelToken.with_timeout(self.settings.timeout_seconds)
        try:
            result = self.dispatcher.submit(script, token)
        except InvalidScript as exc:
            logger.warning("rejected script request '%s': %s", script, exc)
            raise
        if result.error is not None:
            logger.warning("error running script '%s': %s", script, result.error)
            raise result.error
        try:
            registry = build_registry(result.output, opentsdb=self.settings.opentsdb)
        except ParseError as exc:
            self.metrics.parse_errors.labels(script_name=script).inc()
            logger.warning("error parsing output from script '%s': %s", script, exc)
            raise
        try:
            return render(registry)
        except ServeError as exc:
            logger.error("error serving metrics of script '%s': %s", script, exc)
            raise

    def start(self) -> None:
        """Bind the listener and start the admission loop.

        Raises `OSError` when the address cannot be bound.

        Example:
            ```python
            server.start()
            ```
        """
        self._httpd = _ExporterHTTPServer((self.settings.host, self.settings.port), self)
        self.dispatcher.start()
        host, port = self.server_address
        logger.info("listening on %s:%d, scripts from %s", host, port, self.dispatcher.script_path)

    def serve_forever(self) -> None:
        """Serve HTTP on the calling thread until `shutdown()`.

        Example:
            ```python
            server.serve_forever()
            ```
        """
        if self._httpd is None:
            self.start()
        assert self._httpd is not None
        self._httpd.serve_forever()

    def serve_in_background(self) -> None:
        """Serve HTTP on a daemon thread.

        Example:
            ```python
            server.serve_in_background()
            ```
        """
        if self._httpd is None:
            self.start()
        self._serve_thread = threading.Thread(
            target=self.serve_forever,
            name="script-exporter-http",
            daemon=True,
        )
        self._serve_thread.start()

    def shutdown(self) -> None:
        """Stop serving, close the socket and stop the admission loop.

        Example:
            ```python
            server.shutdown()
            ```
        """
        if self._httpd is not None:
            if self._serve_thread is not None:
                self._httpd.shutdown()
                self._serve_thread.join()
                self._serve_thread = None
            self._httpd.server_close()
            self._httpd = None
        self.dispatcher.close()
        logger.info("server stopped")
