#!/usr/bin/env python3
"""
Secrets -- register, log in locally or with Google, and keep one secret.

Usage:
  python main.py
  python main.py --port 8080
  python main.py --host 0.0.0.0 --reload

Environment variables (or .env):
  SECRET_KEY            Session signing key, >= 32 chars. Required unless DEBUG=true.
  DATABASE_URL          SQLAlchemy URL. Alternatively PG_USER, PG_HOST, PG_DATABASE,
                        PG_PASSWORD, PG_PORT. Defaults to a local SQLite file.
  GOOGLE_CLIENT_ID      Enables "Sign in with Google" together with GOOGLE_CLIENT_SECRET.
  GOOGLE_CALLBACK_URL   Fixed OAuth callback (default http://localhost:3000/auth/google/secrets).
  PORT                  Listen port (default 3000).
"""

import argparse

import uvicorn

from core.config import get_settings


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Run the Secrets web app.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=settings.port, help=f"Listen port (default: {settings.port})")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")
    args = parser.parse_args()

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
