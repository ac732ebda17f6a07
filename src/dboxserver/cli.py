"""Command-line entrypoint for running the Dropbox origin server."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, Sequence

import structlog
import uvicorn

from .common.observability import configure_logging
from .common.settings import OriginSettings
from .origin.app import SERVICE_NAME, create_app

LOGGER = structlog.get_logger("dboxserver.cli")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve a Dropbox folder over HTTP with caching")
    parser.add_argument("--folder", help="Dropbox folder to serve from (default: /Public)")
    parser.add_argument("--hostname", help="If present, serve HTTPS for this hostname with provisioned certificates")
    parser.add_argument("--port", type=int, help="Plain HTTP port used when no hostname is given (default: 8889)")
    parser.add_argument("--bind", help="Address to listen on (default: 0.0.0.0)")
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> OriginSettings:
    overrides = {
        "folder": args.folder,
        "hostname": args.hostname,
        "http_port": args.port,
        "bind_address": args.bind,
    }
    return OriginSettings(**{key: value for key, value in overrides.items() if value is not None})


def certificate_paths(settings: OriginSettings) -> tuple[Path, Path]:
    """Locate the ACME-issued chain and key for the configured hostname."""
    base = settings.tls_cert_dir / str(settings.hostname)
    cert_file = base / "fullchain.pem"
    key_file = base / "privkey.pem"
    missing = [str(path) for path in (cert_file, key_file) if not path.is_file()]
    if missing:
        raise SystemExit(f"TLS certificate files for {settings.hostname} not found: {', '.join(missing)}")
    return cert_file, key_file


def server_config(app, settings: OriginSettings) -> uvicorn.Config:
    common = {
        "host": settings.bind_address,
        "log_config": None,
        "timeout_keep_alive": 10,
        "server_header": False,
    }
    if settings.serves_https:
        cert_file, key_file = certificate_paths(settings)
        return uvicorn.Config(
            app,
            port=settings.https_port,
            ssl_certfile=str(cert_file),
            ssl_keyfile=str(key_file),
            **common,
        )
    return uvicorn.Config(app, port=settings.http_port, **common)


async def serve(settings: OriginSettings) -> None:
    config = server_config(create_app(settings), settings)
    server = uvicorn.Server(config)
    scheme = "https" if settings.serves_https else "http"
    LOGGER.info("origin_listening", scheme=scheme, host=config.host, port=config.port)
    await server.serve()
    if not server.started:
        raise SystemExit(1)


def main(argv: Optional[Sequence[str]] = None) -> None:
    settings = load_settings(parse_args(argv))
    configure_logging(SERVICE_NAME, settings.log_level, settings.log_format)
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
