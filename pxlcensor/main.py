from __future__ import annotations

import argparse
import logging
import os
import sys
import uuid

from fastapi import FastAPI
import uvicorn

from pxlcensor.api.http_app import build_app
from pxlcensor.logging_setup import configure_logging
from pxlcensor.media.http_app import build_media_app
from pxlcensor.roles import SUPPORTED_ROLES, RuntimeRole, validate_role
from pxlcensor.services.bootstrap import RuntimeContainer, build_runtime_container

DEFAULT_PORTS = {
    "api": 8080,
    "media": 8081,
    "worker": 8100,
}


def _default_port(role: str) -> int:
    return DEFAULT_PORTS.get(role, 8100)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="pxlcensor runtime entrypoint")
    parser.add_argument("--role", required=True, help="Runtime role")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument(
        "--dry-run-startup",
        action="store_true",
        help="Validate startup and exit",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable code reload (dev mode)",
    )
    return parser.parse_args(argv)


def build_role_app(role: RuntimeRole, run_id: str, container: RuntimeContainer) -> FastAPI:
    if role.name == "media":
        return build_media_app(
            store=container.store,
            signer=container.signer,
            run_id=run_id,
            role=role.name,
            max_body_bytes=container.media_settings.max_upload_bytes,
        )
    return build_app(
        role=role.name,
        run_id=run_id,
        worker_loop=container.worker_loop,
        notifier=container.notifier,
        api_deps=container.api_deps,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
    )


def create_runtime_app() -> FastAPI:
    role_name = os.getenv("APP_ROLE", "api")
    role = validate_role(role_name)
    run_id = str(uuid.uuid4())
    configure_logging()
    container = build_runtime_container(role)
    return build_role_app(role, run_id, container)


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        role = validate_role(args.role)
    except ValueError as exc:
        supported = ", ".join(SUPPORTED_ROLES)
        sys.stderr.write(f"ERROR: {exc}\n")
        sys.stderr.write(f"Try one of: {supported}\n")
        return 2

    configure_logging()
    run_id = str(uuid.uuid4())
    logger = logging.getLogger("runtime")

    logger.info(
        "runtime initialized",
        extra={"role": role.name, "service": role.name, "run_id": run_id},
    )

    if args.dry_run_startup:
        logger.info(
            "dry-run startup complete",
            extra={"role": role.name, "service": role.name, "run_id": run_id},
        )
        return 0

    port = args.port if args.port is not None else _default_port(role.name)
    if args.reload:
        os.environ["APP_ROLE"] = role.name
        uvicorn.run(
            "pxlcensor.main:create_runtime_app",
            host=args.host,
            port=port,
            log_level="warning",
            reload=True,
            factory=True,
        )
    else:
        container = build_runtime_container(role)
        app = build_role_app(role, run_id, container)
        uvicorn.run(app, host=args.host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
