"""WSGI control API for vm-builder."""

from __future__ import annotations

import json
import re
from http import HTTPStatus
from socketserver import ThreadingMixIn
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from vmbuilder.exceptions import ManagerError, NotFoundError, ResourceBusyError
from vmbuilder.models import parse_create_request
from vmbuilder.provisioner import Provisioner
from vmbuilder.utils import log

JSON_CONTENT_TYPE = "application/json; charset=utf-8"

Response = Tuple[int, Optional[Any]]


class HTTPError(Exception):
    """Error raised by request handling itself, before any VM is involved."""

    def __init__(self, status: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message


def _status_line(status: int) -> str:
    return f"{status} {HTTPStatus(status).phrase}"


def read_json_body(environ: Dict[str, Any]) -> Any:
    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
        raw = environ["wsgi.input"].read(length) if length > 0 else b""
    except (ValueError, OSError) as exc:
        raise HTTPError(
            400,
            "request-io-error",
            "There was an IO error while reading request's body. Please try again.",
        ) from exc
    try:
        return json.loads(raw.decode("utf-8")) if raw else {}
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPError(
            415,
            "invalid-json",
            "There was an error parsing the provided JSON message. Please try again.",
        ) from exc


class VMBuilderApp:
    """Routes ``/vms`` requests to a :class:`Provisioner`."""

    def __init__(self, provisioner: Provisioner) -> None:
        self.provisioner = provisioner
        self.routes: List[Tuple[str, "re.Pattern[str]", Callable[..., Response]]] = [
            ("GET", re.compile(r"^/vms/?$"), self.list_vms),
            ("POST", re.compile(r"^/vms/?$"), self.create_vm),
            ("GET", re.compile(r"^/vms/([^/]+)/?$"), self.get_vm),
            ("DELETE", re.compile(r"^/vms/([^/]+)/?$"), self.destroy_vm),
        ]

    def __call__(self, environ: Dict[str, Any], start_response: Callable) -> Iterable[bytes]:
        method = environ.get("REQUEST_METHOD", "GET").upper()
        path = environ.get("PATH_INFO", "") or "/"
        log("INFO", f"{environ.get('REMOTE_ADDR', '-')} {method} {path}")

        try:
            status, body = self.dispatch(method, path, environ)
        except HTTPError as exc:
            log("ERROR", f"{method} {path}: {exc.code}: {exc.message}")
            status, body = exc.status, {"code": exc.code, "message": exc.message}
        except ManagerError as exc:
            log("ERROR", f"{method} {path}: {exc.code}: {exc.message}")
            status, body = exc.http_status, exc.to_dict()
        except Exception as exc:
            log("ERROR", f"{method} {path}: unexpected error: {exc!r}")
            status, body = 500, ManagerError().to_dict()

        if body is None:
            start_response(_status_line(status), [("Content-Length", "0")])
            return [b""]
        payload = json.dumps(body, indent=2).encode("utf-8")
        start_response(
            _status_line(status),
            [("Content-Type", JSON_CONTENT_TYPE), ("Content-Length", str(len(payload)))],
        )
        return [payload]

    def dispatch(self, method: str, path: str, environ: Dict[str, Any]) -> Response:
        path_matched = False
        for route_method, pattern, handler in self.routes:
            match = pattern.match(path)
            if match is None:
                continue
            path_matched = True
            if method == route_method:
                return handler(environ, *match.groups())
        if path_matched:
            raise HTTPError(405, "method-not-allowed", f"Method {method} is not allowed on {path}")
        raise HTTPError(404, "not-found", f"No route for {path}")

    def create_vm(self, environ: Dict[str, Any]) -> Response:
        data = read_json_body(environ)
        request = parse_create_request(data)
        vm = self.provisioner.submit(request)
        return 202, vm.to_dict()

    def _open_error(self, exc: ManagerError) -> ResourceBusyError:
        log("ERROR", f"Unable to open VM: {exc}")
        return ResourceBusyError()

    def get_vm(self, environ: Dict[str, Any], vm_id: str) -> Response:
        try:
            vm = self.provisioner.get(vm_id)
        except NotFoundError:
            raise
        except ManagerError as exc:
            raise self._open_error(exc) from exc
        return 200, vm.to_dict()

    def destroy_vm(self, environ: Dict[str, Any], vm_id: str) -> Response:
        try:
            self.provisioner.destroy(vm_id)
        except (NotFoundError, ResourceBusyError):
            raise
        except ManagerError as exc:
            log("ERROR", f"Failed to destroy VM {vm_id}: {exc}")
            raise ManagerError() from exc
        return 204, None

    def list_vms(self, environ: Dict[str, Any]) -> Response:
        return 200, {"vms": self.provisioner.list_running()}


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class LoggingRequestHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        log("DEBUG", f"{self.address_string()} {format % args}")


def make_app_server(provisioner: Provisioner, host: str = "", port: int = 12345) -> WSGIServer:
    app = VMBuilderApp(provisioner)
    return make_server(
        host,
        port,
        app,
        server_class=ThreadingWSGIServer,
        handler_class=LoggingRequestHandler,
    )
