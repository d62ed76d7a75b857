"""CLI entry points for vm-builder."""

from __future__ import annotations

import argparse
import dataclasses
import signal
from pathlib import Path
from typing import List, Optional

from vmbuilder.config import Settings, load_settings, normalize_backend
from vmbuilder.exceptions import ManagerError
from vmbuilder.provisioner import Provisioner
from vmbuilder.utils import log, parse_int
from vmbuilder.web import make_app_server


def show_config(settings: Settings) -> None:
    """Print the resolved settings and exit."""
    for field in dataclasses.fields(settings):
        print(f"  {field.name}: {getattr(settings, field.name)}")


def _raise_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt


def serve(settings: Settings) -> int:
    settings.ensure_directories()
    provisioner = Provisioner(settings)
    server = make_app_server(provisioner, port=settings.port)
    prev_sigterm = signal.signal(signal.SIGTERM, _raise_interrupt)
    log("INFO", f"vm-builder ({settings.backend} backend) listening on :{settings.port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        log("INFO", "Shutdown requested; cancelling in-flight creations")
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
        server.server_close()
        provisioner.shutdown(wait=True)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="vm-builder: VMware VM provisioning service")
    parser.add_argument("--config", type=Path, default=None, help="YAML settings file (default: $CONFIG_FILE)")
    parser.add_argument("--port", default=None, help="Listen port (overrides PORT)")
    parser.add_argument("--backend", default=None, help="Hypervisor backend: vmrun or libvirt (overrides BACKEND)")
    parser.add_argument("--show-config", action="store_true", help="Show resolved settings and exit")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
        if args.port is not None:
            settings.port = parse_int("--port", args.port, min_val=1, max_val=65535)
        if args.backend is not None:
            settings.backend = normalize_backend(args.backend)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(settings)
        return 0

    try:
        return serve(settings)
    except OSError as exc:
        log("ERROR", f"Unable to start server on port {settings.port}: {exc}")
        return 1
