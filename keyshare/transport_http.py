"""HKP transport bindings: the lookup server and a small lookup client."""

from __future__ import annotations

import logging
import socket
import threading
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Callable

from .constants import HKP_ADD_PATH, HKP_ANY_PORT, HKP_LOOKUP_PATH
from .keystore import GnuPGKeystore, KeystoreError, KeystoreProtocol
from .render import (
    ADD_RESPONSE,
    NOTFOUND_RESPONSE,
    render_error,
    render_get,
    render_index,
)

logger = logging.getLogger(__name__)

KeystoreFactory = Callable[[], KeystoreProtocol]

MAX_DISCARD_BYTES = 1_048_576

# One lookup server per process.
_active_lock = threading.Lock()
_active_server: HKPServer | None = None

ERR_NO_QUERY = "pks request had no query string"
ERR_NO_OP = "pks request did not include an <b>op</b> property"
ERR_BAD_OP = "pks request had an invalid <b>op</b> property"
ERR_NO_SEARCH = "pks request did not include a <b>search</b> property"
ERR_RETRIEVE = "Error retrieving key(s)"
ERR_NO_KEYS = "No matching keys in database"
ERR_NO_KEY = "No matching key in database"
ERR_INTERNAL = "Internal error"


class HKPServerError(RuntimeError):
    """Raised on lookup server lifecycle errors."""


class BindFailedError(HKPServerError):
    """Raised when the HTTP listener cannot be opened."""


class NotRunningError(HKPServerError):
    """Raised when a running server is required."""


@dataclass(frozen=True, slots=True)
class LookupRequest:
    op: str
    search: str
    fingerprints: bool = False

    @classmethod
    def from_args(cls, args: dict[str, str]) -> LookupRequest:
        return cls(
            op=args.get("op", "").lower(),
            search=args.get("search", ""),
            fingerprints=args.get("fingerprint", "").lower() == "on",
        )


def parse_query(query: str) -> dict[str, str]:
    # Later duplicates win, like the legacy form decoder.
    return dict(urllib.parse.parse_qsl(query, keep_blank_values=True))


def process_lookup(method: str, query: str, keystore: KeystoreProtocol) -> tuple[int, str]:
    """Answer one `/pks/lookup` request; returns (status, html body).

    HKP reports lookup problems inside a 200 page. Only a non-GET method and a
    missing query string produce a 405.
    """
    if method != "GET":
        return 405, ""

    args = parse_query(query)
    if not args:
        return 405, render_error(ERR_NO_QUERY)

    request = LookupRequest.from_args(args)
    if not request.op:
        return 200, render_error(ERR_NO_OP)
    if request.op == "index":
        return 200, _lookup_index(request, keystore, verbose=False)
    if request.op == "vindex":
        return 200, _lookup_index(request, keystore, verbose=True)
    if request.op == "get":
        return 200, _lookup_get(request, keystore)
    return 200, render_error(ERR_BAD_OP)


def _lookup_index(request: LookupRequest, keystore: KeystoreProtocol, *, verbose: bool) -> str:
    if not request.search:
        return render_error(ERR_NO_SEARCH)

    try:
        records = keystore.list_keys(request.search, include_signatures=verbose)
    except KeystoreError as exc:
        logger.warning("HKP server keystore error: %s", exc)
        return render_error(ERR_RETRIEVE)

    if not records:
        return render_error(ERR_NO_KEYS)
    return render_index(records, request.search, verbose=verbose, fingerprints=request.fingerprints)


def _lookup_get(request: LookupRequest, keystore: KeystoreProtocol) -> str:
    if not request.search:
        return render_error(ERR_NO_SEARCH)

    try:
        armored = keystore.export_armored(request.search)
    except KeystoreError as exc:
        logger.warning("HKP server keystore error: %s", exc)
        return render_error(ERR_RETRIEVE)

    if not armored:
        return render_error(ERR_NO_KEY)
    return render_get(armored, request.search)


def _matches_route(path: str, route: str) -> bool:
    return path == route or path.startswith(route + "/")


class HKPServer:
    """Single-threaded stdlib HTTP server answering HKP lookups.

    At most one request is in flight: each one is read and answered in full
    before the next connection is accepted.
    """

    def __init__(
        self,
        host: str = "",
        port: int = HKP_ANY_PORT,
        *,
        keystore_factory: KeystoreFactory | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.keystore_factory = keystore_factory or GnuPGKeystore
        self._server: HTTPServer | None = None
        self._keystore: KeystoreProtocol | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> int:
        global _active_server

        with _active_lock:
            if self._server is not None:
                raise HKPServerError("HKP server is already running")
            if _active_server is not None:
                raise HKPServerError(f"another HKP server is already running on port {_active_server.get_port()}")

            keystore = self.keystore_factory()
            try:
                server = self._build_server(keystore)
            except OSError as exc:
                keystore.close()
                raise BindFailedError(f"couldn't listen on port {self.port}: {exc.strerror or exc}") from exc

            self._keystore = keystore
            self._server = server
            self._thread = threading.Thread(target=server.serve_forever, name="hkp-server", daemon=True)
            self._thread.start()
            _active_server = self

            port = server.server_address[1]
            logger.info("HKP server listening on port %d", port)
            return port

    def stop(self) -> None:
        global _active_server

        with _active_lock:
            server, self._server = self._server, None
            keystore, self._keystore = self._keystore, None
            thread, self._thread = self._thread, None
            if _active_server is self:
                _active_server = None

            if server is not None:
                server.shutdown()
                server.server_close()
                logger.info("HKP server stopped")
            if thread is not None:
                thread.join(timeout=1)
            if keystore is not None:
                keystore.close()

    def is_running(self) -> bool:
        return self._server is not None

    def get_port(self) -> int:
        server = self._server
        if server is None:
            raise NotRunningError("HKP server is not running")
        return server.server_address[1]

    @property
    def url(self) -> str:
        host = self.host or "127.0.0.1"
        return f"http://{host}:{self.get_port()}"

    def _build_server(self, keystore: KeystoreProtocol) -> HTTPServer:
        class RequestHandler(BaseHTTPRequestHandler):
            server_version = "keyshare-hkp"
            _READ_TIMEOUT_S = 15.0

            def do_GET(self) -> None:  # noqa: N802
                self._dispatch()

            do_HEAD = do_GET
            do_POST = do_GET
            do_PUT = do_GET
            do_DELETE = do_GET
            do_OPTIONS = do_GET
            do_PATCH = do_GET

            def _dispatch(self) -> None:
                parsed = urllib.parse.urlsplit(self.path)
                self._discard_body()

                try:
                    if _matches_route(parsed.path, HKP_LOOKUP_PATH):
                        status, body = process_lookup(self.command, parsed.query, keystore)
                    elif _matches_route(parsed.path, HKP_ADD_PATH):
                        status, body = 405, ADD_RESPONSE
                    else:
                        status, body = 404, NOTFOUND_RESPONSE
                except Exception:
                    logger.exception("HKP request %s %s failed", self.command, self.path)
                    status, body = 200, render_error(ERR_INTERNAL)

                self._send(status, body)

            def _discard_body(self) -> None:
                try:
                    length = int(self.headers.get("Content-Length", "0"))
                except ValueError:
                    return
                if length <= 0:
                    return
                try:
                    self.connection.settimeout(self._READ_TIMEOUT_S)
                    self.rfile.read(min(length, MAX_DISCARD_BYTES))
                except (TimeoutError, socket.timeout, OSError):
                    return

            def _send(self, status: int, body: str) -> None:
                payload = body.encode("utf-8")
                self.close_connection = True
                try:
                    self.send_response(status)
                    self.send_header("Content-Type", "text/html")
                    self.send_header("Content-Length", str(len(payload)))
                    self.send_header("Connection", "close")
                    self.end_headers()
                    if payload and self.command != "HEAD":
                        self.wfile.write(payload)
                except (BrokenPipeError, ConnectionResetError):
                    return

            def log_message(self, format: str, *args: object) -> None:
                logger.debug("%s - %s", self.address_string(), format % args)

        class ReusableServer(HTTPServer):
            allow_reuse_address = True

        return ReusableServer((self.host, self.port), RequestHandler)


def send_lookup(
    base_url: str,
    op: str,
    search: str,
    *,
    fingerprint: bool = False,
    timeout: float = 10.0,
) -> tuple[int, str]:
    """Issue one HKP lookup and return (status, body), error statuses included."""
    if "://" not in base_url:
        base_url = f"http://{base_url}"

    params = {"op": op, "search": search}
    if fingerprint:
        params["fingerprint"] = "on"
    url = base_url.rstrip("/") + HKP_LOOKUP_PATH + "?" + urllib.parse.urlencode(params)

    request = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return response.status, response.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        body = exc.read() if exc.fp is not None else b""
        return exc.code, body.decode("utf-8", errors="replace")
