from __future__ import annotations

from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import json
import logging
from typing import cast

from autocherry.events import DELIVERY_HEADER, EVENT_HEADER, SIGNATURE_HEADER, EventRouter
from autocherry.observability import log_event


LOGGER = logging.getLogger("autocherry.webhook_server")
HEALTH_PATH = "/healthz"
MAX_BODY_BYTES = 25 * 1024 * 1024


class WebhookServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], router: EventRouter) -> None:
        super().__init__(address, WebhookRequestHandler)
        self.router = router


class WebhookRequestHandler(BaseHTTPRequestHandler):
    server_version = "autocherry"

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        LOGGER.debug("http %s - %s", self.address_string(), format % args)

    def do_GET(self) -> None:  # noqa: N802
        if self.path == HEALTH_PATH:
            self._respond(HTTPStatus.OK, {"ok": True})
            return
        self._respond(HTTPStatus.NOT_FOUND, {"ok": False, "error": "not found"})

    def do_POST(self) -> None:  # noqa: N802
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            self._respond(HTTPStatus.BAD_REQUEST, {"ok": False, "error": "bad content length"})
            return
        if length < 0 or length > MAX_BODY_BYTES:
            self._respond(HTTPStatus.REQUEST_ENTITY_TOO_LARGE, {"ok": False, "error": "too large"})
            return
        body = self.rfile.read(length)

        router = cast(WebhookServer, self.server).router
        result = router.route(
            self.headers.get(EVENT_HEADER, ""),
            self.headers.get(DELIVERY_HEADER, ""),
            body,
            self.headers.get(SIGNATURE_HEADER),
        )
        log_event(LOGGER, "http_request_routed", path=self.path, status=result.status)
        if result.status == HTTPStatus.NO_CONTENT:
            self.send_response(HTTPStatus.NO_CONTENT)
            self.end_headers()
            return
        self._respond(HTTPStatus(result.status), {"ok": result.status < 400, "reason": result.reason})

    def _respond(self, code: HTTPStatus, payload: dict[str, object]) -> None:
        data = json.dumps(payload).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


def build_server(router: EventRouter, *, host: str, port: int) -> WebhookServer:
    server = WebhookServer((host, port), router)
    log_event(LOGGER, "http_server_started", host=host, port=server.server_address[1])
    return server
