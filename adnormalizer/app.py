"""WSGI application wiring, middleware and the service entry point."""

from __future__ import annotations

import argparse
import gzip
import signal
import sys
import threading
import traceback
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

import requests
from dotenv import load_dotenv
from werkzeug.serving import make_server
from werkzeug.wrappers import Request, Response

from .api import API
from .config import AdNormalizerConfig, ConfigError, read_config
from .encore import HttpEncoreHandler
from .logger import configure_logging, get_logger
from .store import ValkeyStore

_log = get_logger("app")

WSGIApp = Callable[[dict, Callable[..., Any]], Iterable[bytes]]
Handler = Callable[[Request], Response]

DEFAULT_GZIP_MIN_SIZE = 2000
DEFAULT_GZIP_LEVEL = 1
SHUTDOWN_TIMEOUT = 10.0


def health_check(request: Request) -> Response:
    """Liveness probe."""
    return Response(b"pong", status=200, content_type="text/plain; charset=utf-8")


def _endpoint(handler: Handler) -> WSGIApp:
    def app(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        response = handler(Request(environ))
        return response(environ, start_response)

    return app


def _not_found(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
    response = Response(
        "404 page not found\n",
        status=404,
        headers={
            "Content-Type": "text/plain; charset=utf-8",
            "X-Content-Type-Options": "nosniff",
        },
    )
    return response(environ, start_response)


def _router(
    routes: Mapping[str, WSGIApp], mounts: Sequence[tuple[str, WSGIApp]] = ()
) -> WSGIApp:
    """Dispatch exact paths, then prefix mounts whose prefix is stripped from the path."""

    def app(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        path = environ.get("PATH_INFO") or "/"
        target = routes.get(path)
        if target is not None:
            return target(environ, start_response)
        for prefix, mounted in mounts:
            if path.startswith(prefix + "/"):
                inner = dict(environ)
                inner["PATH_INFO"] = path[len(prefix):]
                inner["SCRIPT_NAME"] = environ.get("SCRIPT_NAME", "") + prefix
                return mounted(inner, start_response)
        return _not_found(environ, start_response)

    return app


def _close(result: Iterable[bytes]) -> None:
    close = getattr(result, "close", None)
    if close is not None:
        close()


def cors_middleware(app: WSGIApp) -> WSGIApp:
    """Allow credentialed cross-origin requests from the requesting origin."""

    def wrapped(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        origin = environ.get("HTTP_ORIGIN") or "*"

        def cors_start(status: str, headers: list, exc_info: Any = None) -> Any:
            headers = list(headers) + [
                ("Access-Control-Allow-Credentials", "true"),
                ("Access-Control-Expose-Headers", "Set-Cookie"),
                ("Access-Control-Allow-Origin", origin),
            ]
            if exc_info is None:
                return start_response(status, headers)
            return start_response(status, headers, exc_info)

        return app(environ, cors_start)

    return wrapped


def recovery_middleware(app: WSGIApp) -> WSGIApp:
    """Turn an unhandled exception into an empty 500 response."""

    def wrapped(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        try:
            result = app(environ, start_response)
            try:
                return [b"".join(result)]
            finally:
                _close(result)
        except Exception as exc:
            _log.error(
                "There was a panic in a request",
                extra={"error": repr(exc), "stack": traceback.format_exc()},
            )
            start_response(
                "500 Internal Server Error", [("Content-Length", "0")], sys.exc_info()
            )
            return [b""]

    return wrapped


def _accepts_gzip(header: str) -> bool:
    for item in header.split(","):
        name, _, params = item.strip().partition(";")
        if name.strip().lower() not in ("gzip", "*"):
            continue
        quality = 1.0
        for param in params.split(";"):
            key, _, value = param.strip().partition("=")
            if key.strip().lower() == "q":
                try:
                    quality = float(value)
                except ValueError:
                    quality = 0.0
        if quality > 0:
            return True
    return False


def gzip_middleware(
    app: WSGIApp, min_size: int = DEFAULT_GZIP_MIN_SIZE, level: int = DEFAULT_GZIP_LEVEL
) -> WSGIApp:
    """Gzip response bodies of at least ``min_size`` bytes for clients that accept it."""

    def wrapped(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        captured: dict[str, Any] = {}
        chunks: list[bytes] = []

        def capture(status: str, headers: list, exc_info: Any = None) -> Callable[[bytes], None]:
            if exc_info is not None and captured:
                raise exc_info[1].with_traceback(exc_info[2])
            captured["status"] = status
            captured["headers"] = list(headers)
            return chunks.append

        result = app(environ, capture)
        try:
            for chunk in result:
                chunks.append(chunk)
        finally:
            _close(result)
        body = b"".join(chunks)
        status = captured["status"]
        headers: list[tuple[str, str]] = captured["headers"]
        already_encoded = any(key.lower() == "content-encoding" for key, _ in headers)
        if (
            not already_encoded
            and len(body) >= min_size
            and _accepts_gzip(environ.get("HTTP_ACCEPT_ENCODING", ""))
        ):
            body = gzip.compress(body, compresslevel=level)
            headers = [(k, v) for k, v in headers if k.lower() != "content-length"]
            headers += [
                ("Content-Encoding", "gzip"),
                ("Vary", "Accept-Encoding"),
                ("Content-Length", str(len(body))),
            ]
        start_response(status, headers)
        return [body]

    return wrapped


def _chain(app: WSGIApp) -> WSGIApp:
    return recovery_middleware(cors_middleware(gzip_middleware(app)))


def _thread_dump(request: Request) -> Response:
    frames = sys._current_frames()
    sections = []
    for thread in threading.enumerate():
        frame = frames.get(thread.ident or -1)
        stack = "".join(traceback.format_stack(frame)) if frame is not None else ""
        sections.append(f"Thread {thread.name} ({thread.ident}):\n{stack}")
    return Response("\n".join(sections), status=200, content_type="text/plain; charset=utf-8")


def create_app(api: API, environment: str = "") -> WSGIApp:
    """Build the WSGI application routing requests to the API handlers."""
    api_app = _chain(
        _router(
            {
                "/vmap": _endpoint(api.handle_vmap),
                "/vast": _endpoint(api.handle_vast),
            }
        )
    )
    packager_app = _chain(
        _router(
            {
                "/success": _endpoint(api.handle_packaging_success),
                "/failure": _endpoint(api.handle_packaging_failure),
            }
        )
    )
    mounts: list[tuple[str, WSGIApp]] = [
        ("/api/v1", api_app),
        ("/packagerCallback", packager_app),
    ]
    # Debug endpoints stay hidden in production.
    if environment != "PRODUCTION":
        mounts.append(("/debug", _router({"/threads": _endpoint(_thread_dump)})))
    return _router(
        {
            "/encoreCallback": _endpoint(api.handle_encore_callback),
            "/ping": _endpoint(health_check),
        },
        mounts,
    )


def build_api(config: AdNormalizerConfig) -> API:
    """Create the store, the Encore client and the API from a configuration."""
    store = ValkeyStore.from_url(config.valkey_url)
    _log.debug("Valkey store created successfully")
    if config.osc_token:
        _log.debug("OSC access token configured; Encore requests are sent without a service token")
    encore_handler = HttpEncoreHandler(
        requests.Session(),
        config.encore_url,
        config.encore_profile,
        None,
        config.bucket_url,
        config.root_url,
    )
    return API(store, config, encore_handler, requests.Session())


def main(argv: Sequence[str] | None = None) -> int:
    """Run the ad normalizer HTTP server until SIGINT or SIGTERM."""
    parser = argparse.ArgumentParser(
        prog="ad-normalizer",
        description="Normalize VAST and VMAP ad responses; configured through the environment.",
    )
    parser.parse_args(argv)

    load_dotenv(".env")
    configure_logging()

    try:
        config = read_config()
    except ConfigError as exc:
        _log.error("Failed to read configuration", extra={"error": str(exc)})
        return 1
    try:
        api = build_api(config)
    except Exception as exc:
        _log.error("Failed to set up the API", extra={"error": str(exc)})
        return 1

    app = create_app(api, config.environment)
    server = make_server("0.0.0.0", config.port, app, threaded=True)
    stop = threading.Event()

    def _on_signal(signum: int, frame: Any) -> None:
        stop.set()

    previous = {
        sig: signal.signal(sig, _on_signal) for sig in (signal.SIGTERM, signal.SIGINT)
    }
    worker = threading.Thread(target=server.serve_forever, name="http-server", daemon=True)
    _log.info("Starting server...")
    worker.start()
    try:
        while not stop.wait(0.5):
            if not worker.is_alive():
                _log.error("Server stopped unexpectedly")
                return 1
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    _log.info("Shutting down server...")
    server.shutdown()
    worker.join(SHUTDOWN_TIMEOUT)
    server.server_close()
    if worker.is_alive():
        _log.error("Server shutdown error", extra={"error": "timed out"})
        return 1
    _log.info("Server gracefully stopped")
    return 0