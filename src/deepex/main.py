"""
Main entry point for the DeepEx API server.
"""

import argparse
import sys

import uvicorn
from opentelemetry import metrics as otel_metrics

from . import __version__
from .config.settings import get_settings
from .observability.logging import get_logger, setup_logging
from .observability.metrics import setup_metrics
from .observability.tracing import get_tracing_manager, setup_tracing

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="DeepEx reasoning server")
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--workers", type=int, default=None, help="Number of workers")
    parser.add_argument("--version", action="store_true", help="Show version")
    return parser


def main(argv=None):
    """Main application entry point with server startup."""
    args = build_parser().parse_args(argv)

    if args.version:
        print(f"DeepEx v{__version__}")
        return

    settings = get_settings()
    observability = settings.observability
    setup_logging(observability.log_level, observability.log_format)

    if observability.enable_tracing:
        setup_tracing(observability.service_name, observability.service_version, observability.otlp_endpoint)
    setup_metrics(otel_metrics.get_meter(observability.service_name, observability.service_version))

    logger.info(
        "DeepEx initialized",
        environment=settings.environment,
        tracing_enabled=observability.enable_tracing,
        otlp=bool(observability.otlp_endpoint),
    )

    try:
        uvicorn.run(
            "deepex.api.server:app",
            host=args.host or settings.api.host,
            port=args.port or settings.api.port,
            reload=args.reload or settings.api.reload,
            workers=args.workers or settings.api.workers,
        )
    finally:
        if observability.enable_tracing:
            get_tracing_manager().shutdown()
            logger.info("Tracing shutdown complete")


def cli_main():
    """CLI entry point."""
    try:
        main(sys.argv[1:])
        sys.exit(0)
    except KeyboardInterrupt:
        print("\nDeepEx shutdown")
        sys.exit(0)
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        print(f"Startup failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
