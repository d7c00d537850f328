"""Entry point for running the OpenCTI lookup MCP server.

Usage:
    python -m opencti_lookup
    opencti-lookup

Environment Variables:
    OPENCTI_URL: OpenCTI server URL (default: http://localhost:8080)
    OPENCTI_TOKEN: API token for authentication
    OPENCTI_TIMEOUT: Request timeout in seconds (default: 60)
    OPENCTI_DELETION_PERMISSIONS: Item kinds that may be deleted
        (comma-separated: indicators,observables)
    OPENCTI_EXACT_MATCH: Exact name/value matching (default: false)
    OPENCTI_ALLOW_ASSOCIATION: Enable association in the host UI (default: false)
    OPENCTI_AUTOMATIC_LINKING: Link indicators/observables created together
        (default: false)
    OPENCTI_MAX_URL_LENGTH: Skip URL entities at or over this length (default: 100)
    OPENCTI_MAX_CONCURRENT_SEARCHES: Concurrent searches per lookup (default: 10)
    OPENCTI_LOOKUP_LOG_FORMAT: "json" (default) or "text"

Feature Flags (FF_ prefix):
    FF_STARTUP_VALIDATION: Enable startup connectivity test (default: true)
    FF_MARKING_REFRESH: Refresh marking cache in background (default: true)

Token can also be provided via:
    ~/.config/opencti-lookup/token (with 600 permissions)
    .env file (OPENCTI_TOKEN=...)
"""

from __future__ import annotations

import asyncio
import sys

from .client import OpenCTIClient
from .config import Config
from .errors import ConfigurationError
from .feature_flags import get_feature_flags
from .logging import get_logger, setup_logging
from .server import OpenCTILookupServer


def main() -> None:
    """Main entry point."""
    setup_logging()
    logger = get_logger("main")

    try:
        config = Config.load()
        logger.info(f"Starting OpenCTI lookup server: {config}")

        flags = get_feature_flags()
        logger.debug(f"Feature flags: {flags.to_dict()}")

        client = OpenCTIClient(config)

        if flags.startup_validation:
            logger.info("Running startup validation...")
            validation = client.validate_startup()

            for warning in validation.get("warnings", []):
                logger.warning(f"Startup warning: {warning}")

            if validation.get("opencti_version"):
                logger.info(
                    f"Connected to OpenCTI {validation['opencti_version']}",
                    extra={"opencti_version": validation["opencti_version"]},
                )

            if not validation.get("valid", True):
                for error in validation.get("errors", []):
                    logger.error(f"Startup error: {error}")
                # Start anyway; tool calls report errors individually
                logger.warning(
                    "Startup validation had errors - server will start but may have issues"
                )

        server = OpenCTILookupServer(config, client=client)
        asyncio.run(server.run())

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        print("\nTo configure, set OPENCTI_TOKEN environment variable", file=sys.stderr)
        print("or create ~/.config/opencti-lookup/token file", file=sys.stderr)
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("Shutting down")

    except Exception:
        logger.exception("Fatal error")
        sys.exit(1)


if __name__ == "__main__":
    main()
