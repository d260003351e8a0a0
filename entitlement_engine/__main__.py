"""Run the control API: ``python -m entitlement_engine``."""

import argparse
import os
import sys
from typing import Optional, Sequence

import uvicorn

from entitlement_engine import __version__
from entitlement_engine.logging_config import configure_logging, get_logger

APP_IMPORT_PATH = "entitlement_engine.main:app"


def build_parser() -> argparse.ArgumentParser:
    """Command line options; every option falls back to its environment variable."""
    parser = argparse.ArgumentParser(
        prog="entitlement-engine",
        description="Resolve Pro access from billing receipts and serve it over HTTP",
    )
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8080")))
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        default=os.getenv("LOG_FORMAT", "json"),
    )
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH"),
        help="Path to entitlements.yaml (default: config/entitlements.yaml if present)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("RELOAD", "false").lower() == "true",
        help="Auto-reload on code changes (development only)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    # uvicorn imports the app by path, so settings travel through the environment
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    if args.config:
        os.environ["CONFIG_PATH"] = args.config

    configure_logging(log_level=args.log_level, json_format=args.log_format == "json")
    logger = get_logger(__name__)
    logger.info(
        "engine_launching",
        version=__version__,
        host=args.host,
        port=args.port,
        config=args.config or "config/entitlements.yaml",
        reload=args.reload,
    )

    try:
        uvicorn.run(
            APP_IMPORT_PATH,
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            reload=args.reload,
            access_log=False,  # RequestLoggingMiddleware logs access
        )
    except KeyboardInterrupt:
        logger.info("engine_interrupted")
    except Exception as e:
        logger.error("engine_launch_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
