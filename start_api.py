#!/usr/bin/env python3
"""
Startup script for the Local Events Collector API server.

Usage:
    python start_api.py                      # Development mode
    python start_api.py --prod               # Production mode
    python start_api.py --store api          # Forward events to API_URL
    python start_api.py --catalog my.json    # Alternate source catalog
"""

import argparse
import os
import uvicorn


def main():
    """Start the FastAPI server with configurable options."""
    # Set environment variable for efficient file watching
    os.environ.setdefault("WATCHFILES_FORCE_POLLING", "1")
    parser = argparse.ArgumentParser(description="Start Local Events Collector API")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8001, help="Port to bind to (default: 8001)")
    parser.add_argument(
        "--prod", action="store_true", help="Run in production mode (no auto-reload)"
    )
    parser.add_argument(
        "--workers", type=int, default=1, help="Number of worker processes (default: 1)"
    )
    parser.add_argument(
        "--no-reload", action="store_true", help="Disable auto-reload to reduce CPU usage"
    )
    parser.add_argument(
        "--store",
        choices=["memory", "api"],
        help="Where synced events go (default: EVENT_STORE_BACKEND or memory)",
    )
    parser.add_argument("--catalog", help="Path to the calendar source catalog JSON")
    parser.add_argument(
        "--debug", action="store_true", help="Log discovery and collection progress"
    )

    args = parser.parse_args()

    # Settings are read when api.main is imported, so export overrides first.
    if args.store:
        os.environ["EVENT_STORE_BACKEND"] = args.store
    if args.catalog:
        os.environ["SOURCE_CATALOG_PATH"] = os.path.abspath(args.catalog)
    if args.debug:
        os.environ["SCRAPER_DEBUG"] = "1"

    store = os.getenv("EVENT_STORE_BACKEND", "memory")

    if args.prod:
        print("🚀 Starting Local Events Collector API in PRODUCTION mode")
        print(f"   📍 http://{args.host}:{args.port}")
        print(f"   👷 {args.workers} worker(s), {store} event store")

        uvicorn.run(
            "api.main:app",
            host=args.host,
            port=args.port,
            workers=args.workers,
            log_level="info",
        )
    else:
        reload_enabled = not args.no_reload
        reload_msg = "🔄 Auto-reload enabled" if reload_enabled else "⚡ Auto-reload DISABLED"

        print("🔧 Starting Local Events Collector API in DEVELOPMENT mode")
        print(f"   📍 http://{args.host}:{args.port}")
        print(f"   {reload_msg}")
        print(f"   🗄️  {store} event store")
        print(f"   📚 API docs: http://{args.host}:{args.port}/docs")

        uvicorn_config = {
            "app": "api.main:app",
            "host": args.host,
            "port": args.port,
            "log_level": "debug",
        }

        if reload_enabled:
            uvicorn_config.update({
                "reload": True,
                "reload_dirs": ["api", "ingest", "scrapers"],
                "reload_delay": 1.0,
            })

        uvicorn.run(**uvicorn_config)


if __name__ == "__main__":
    main()
