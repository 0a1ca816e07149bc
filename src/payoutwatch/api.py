"""
payoutwatch/api.py

HTTP status endpoint for a running payoutwatch process.

Read-only: health, detector status, the last payout report and the
Prometheus metrics text. Served with trio.serve_tcp; one request per
connection.
"""

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

import trio

from . import __version__

if TYPE_CHECKING:
    from .service import PayoutWatchService

logger = logging.getLogger("payoutwatch.api")

# Largest request head accepted, in bytes
MAX_REQUEST_HEAD = 16 * 1024

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@dataclass
class Request:
    """HTTP request line and headers (bodies are not read)."""
    method: str
    path: str
    headers: Dict[str, str]


@dataclass
class Response:
    """HTTP response representation."""
    status: int
    headers: Dict[str, str]
    body: bytes

    @classmethod
    def json(cls, data: Any, status: int = 200) -> "Response":
        body = json.dumps(data, indent=2).encode("utf-8")
        return cls(status=status, headers={"Content-Type": "application/json"}, body=body)

    @classmethod
    def text(cls, text: str, status: int = 200, content_type: str = "text/plain") -> "Response":
        return cls(status=status, headers={"Content-Type": content_type}, body=text.encode("utf-8"))

    @classmethod
    def error(cls, message: str, status: int = 400) -> "Response":
        return cls.json({"error": message}, status=status)


STATUS_TEXT = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


class StatusAPI:
    """
    Status server for one PayoutWatchService.

    Usage:
        api = StatusAPI(service, host="127.0.0.1", port=9120)
        async with trio.open_nursery() as nursery:
            nursery.start_soon(api.start)

        # curl http://127.0.0.1:9120/metrics
    """

    def __init__(self, service: "PayoutWatchService", host: str = "127.0.0.1", port: int = 9120):
        self.service = service
        self.host = host
        self.port = port
        self._routes: Dict[str, Callable] = {
            "/": self._handle_root,
            "/health": self._handle_health,
            "/status": self._handle_status,
            "/last": self._handle_last,
            "/metrics": self._handle_metrics,
        }

    async def start(self) -> None:
        """Serve until cancelled."""
        logger.info(f"Status API listening on {self.host}:{self.port}")
        await trio.serve_tcp(self._handle_connection, self.port, host=self.host)

    async def _handle_connection(self, stream: trio.abc.Stream) -> None:
        try:
            request = await self._read_request(stream)
            if request is None:
                response = Response.error("Bad Request", status=400)
            else:
                response = await self.route(request)
            await stream.send_all(_encode(response))
        except trio.BrokenResourceError:
            logger.debug("Status API client went away")
        except Exception as e:
            logger.error(f"Status API connection error: {e}")
        finally:
            await stream.aclose()

    async def _read_request(self, stream: trio.abc.Stream) -> Optional[Request]:
        data = b""
        while b"\r\n\r\n" not in data:
            if len(data) > MAX_REQUEST_HEAD:
                return None
            chunk = await stream.receive_some(4096)
            if not chunk:
                return None
            data += chunk
        return parse_request(data[:data.index(b"\r\n\r\n")])

    async def route(self, request: Request) -> Response:
        handler = self._routes.get(request.path)
        if handler is None:
            return Response.error("Not Found", status=404)
        if request.method != "GET":
            return Response.error("Method Not Allowed", status=405)
        return await handler(request)

    # ========== Route Handlers ==========

    async def _handle_root(self, request: Request) -> Response:
        return Response.json({
            "name": "payoutwatch",
            "version": __version__,
            "endpoints": sorted(self._routes),
        })

    async def _handle_health(self, request: Request) -> Response:
        running = self.service.detector.get_status()["running"]
        return Response.json({
            "status": "healthy" if running else "stopped",
            "uptime_seconds": self.service.metrics.get_stats()["uptime_seconds"],
        }, status=200 if running else 503)

    async def _handle_status(self, request: Request) -> Response:
        return Response.json(self.service.get_status())

    async def _handle_last(self, request: Request) -> Response:
        report = self.service.last_payout_report()
        if report is None:
            return Response.error("No payout recorded yet", status=404)
        return Response.json(report)

    async def _handle_metrics(self, request: Request) -> Response:
        return Response.text(self.service.metrics.collect(), content_type=PROMETHEUS_CONTENT_TYPE)


def parse_request(head: bytes) -> Optional[Request]:
    """Parse a request line and headers; None if malformed."""
    try:
        lines = head.decode("utf-8").split("\r\n")
    except UnicodeDecodeError:
        return None
    parts = lines[0].split(" ")
    if len(parts) < 2:
        return None
    method, target = parts[0], parts[1]

    headers = {}
    for line in lines[1:]:
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()

    return Request(method=method, path=target.split("?", 1)[0], headers=headers)


def _encode(response: Response) -> bytes:
    headers = dict(response.headers)
    headers["Content-Length"] = str(len(response.body))
    headers["Connection"] = "close"
    headers["Server"] = f"payoutwatch/{__version__}"

    lines = [f"HTTP/1.1 {response.status} {STATUS_TEXT.get(response.status, 'Unknown')}"]
    lines.extend(f"{key}: {value}" for key, value in headers.items())
    lines.append("")
    return "\r\n".join(lines).encode("utf-8") + b"\r\n" + response.body
