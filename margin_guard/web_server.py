"""Command line entry point for the margin guard API server."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, TYPE_CHECKING

from .configuration import Settings, configure_default_logging, load_config

if TYPE_CHECKING:  # pragma: no cover - used only for type hints
    import uvicorn

logger = logging.getLogger(__name__)


def _import_uvicorn() -> "uvicorn":
    """Import :mod:`uvicorn` with a helpful error message when missing."""

    try:
        import uvicorn  # type: ignore[import]
    except ModuleNotFoundError as exc:  # pragma: no cover - depends on runtime environment
        raise ModuleNotFoundError(
            "The 'uvicorn' package is required to run the margin guard API server. "
            "Install margin-guard with its default dependencies or add uvicorn to your environment."
        ) from exc
    return uvicorn


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Launch the margin guard API server")
    parser.add_argument("--config", type=Path, help="Path to the JSON configuration file")
    parser.add_argument("--host", default="0.0.0.0", help="Host address for the web server")
    parser.add_argument("--port", type=int, default=8000, help="Port for the web server")
    parser.add_argument("--dry-run", action="store_true", help="Record emergency commands instead of sending them")
    parser.add_argument("--reload", action="store_true", help="Enable autoreload (development only)")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    config = load_config(args.config) if args.config else None
    settings = Settings.from_environment(config=config)
    if args.dry_run:
        settings.config.execution.dry_run = True
    configure_default_logging(settings.config.debug_level)

    from .engine import MarginGuardEngine
    from .web import create_app  # imported lazily to avoid heavy dependencies at import time

    engine = MarginGuardEngine(settings.config)
    app = create_app(engine)
    logger.info(
        "Starting margin guard API",
        extra={"host": args.host, "port": args.port, "dry_run": settings.config.execution.dry_run},
    )

    uvicorn = _import_uvicorn()
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="debug" if settings.config.debug_level >= 2 else "info",
    )


if __name__ == "__main__":
    main()
