#!/usr/bin/env python3
"""
Price Oracle Startup Script

Starts the Price Oracle FastAPI microservice with environment validation.

Usage:
    python run.py [--port PORT] [--host HOST] [--env ENV]

Environment Variables:
    ORACLE_PORT: Port to run the service on (default: 8002)
    ENV: Environment (development/production)
    LOG_LEVEL: Logging level (DEBUG/INFO/WARNING/ERROR)
    QUOTE_API_KEYS: Comma separated quote API keys
"""

import argparse
import os
import sys

import structlog
import uvicorn

from price_oracle.config import settings

logger = structlog.get_logger()


def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Price Oracle - price aggregation and liquidation triggers"
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=settings.ORACLE_PORT,
        help=f"Port to run the service on (default: {settings.ORACLE_PORT})"
    )

    parser.add_argument(
        "--host", "-H",
        type=str,
        default="0.0.0.0",
        help="Host to bind the service to (default: 0.0.0.0)"
    )

    parser.add_argument(
        "--env", "-e",
        type=str,
        choices=["development", "production"],
        default=settings.ENV if settings.ENV in ("development", "production") else "development",
        help=f"Environment mode (default: {settings.ENV})"
    )

    parser.add_argument(
        "--reload", "-r",
        action="store_true",
        help="Enable auto-reload for development"
    )

    parser.add_argument(
        "--log-level", "-l",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL,
        help=f"Log level (default: {settings.LOG_LEVEL})"
    )

    return parser.parse_args()


def validate_environment():
    """Validate environment setup"""
    errors = []

    mongo_uri = os.getenv("MONGODB_URI", settings.MONGODB_URI)
    if not mongo_uri.startswith("mongodb"):
        errors.append("Invalid MONGODB_URI format")

    if not settings.quote_endpoint_credentials():
        errors.append("No quote API keys configured (QUOTE_API_KEYS or QUOTE_API_KEY)")

    proxies = [proxy for proxy in settings.QUOTE_PROXIES.split(",") if proxy.strip()]
    if len(proxies) > len(settings.quote_endpoint_credentials()):
        errors.append("QUOTE_PROXIES lists more proxies than there are API keys")

    if not settings.ADMIN_API_KEY:
        print("⚠️  ADMIN_API_KEY is not set - admin endpoints will return 500")
    if not settings.LIQUIDATOR_SERVICE_URL:
        print("⚠️  LIQUIDATOR_SERVICE_URL is not set - breached positions will only be reported")

    if errors:
        print("❌ Environment validation failed:")
        for error in errors:
            print(f"   - {error}")
        print("\nPlease check your .env file and ensure all required variables are set.")
        return False

    return True


def print_startup_banner():
    """Print startup banner with service information"""
    endpoints = len(settings.quote_endpoint_credentials())
    banner = f"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                              🚀 Price Oracle                                 ║
║             Price aggregation and liquidation risk triggers                  ║
╠══════════════════════════════════════════════════════════════════════════════╣
║ Port: {settings.ORACLE_PORT:<10} Environment: {settings.ENV:<20}
║ Quote endpoints: {endpoints:<4} Stream: {'enabled' if settings.ENABLE_PRICE_STREAM else 'disabled'}
║ Cache: {settings.PRICE_CACHE_TTL_SECONDS}s in-process, Redis {'(enabled)' if settings.ENABLE_REDIS else '(disabled)'}
║ Refresh every {settings.PRICE_REFRESH_INTERVAL_SECONDS}s, breaker check every {settings.BREAKER_CHECK_INTERVAL_SECONDS}s
╠══════════════════════════════════════════════════════════════════════════════╣
║ • GET  /api/prices?ids=...           - Prices for assets                     ║
║ • GET  /api/prices/{{asset_id}}        - Single price with staleness checks    ║
║ • GET  /api/prices/status            - Service status                        ║
║ • GET  /api/health                   - Health check                          ║
║ • POST /api/admin/circuit-breaker/reset - Reset the circuit breaker          ║
║ • GET  /docs                         - API documentation                     ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""
    print(banner)


def main():
    """Main entry point"""
    args = parse_arguments()

    print_startup_banner()

    if not validate_environment():
        sys.exit(1)

    try:
        logger.info("Starting Price Oracle", host=args.host, port=args.port, env=args.env)
        uvicorn.run(
            "price_oracle.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            access_log=True,
            reload=args.reload or args.env == "development",
        )
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    except Exception as e:
        logger.error("Failed to start server", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
