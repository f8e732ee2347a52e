#!/usr/bin/env python3
"""Register a client application and print its credentials.

Usage:
    python scripts/bootstrap_client.py --name billing-portal

    # Or with an environment variable:
    CLIENT_NAME=billing-portal python scripts/bootstrap_client.py

The client secret is printed once and stored only as an argon2 hash.

Environment Variables:
    CLIENT_NAME: Name of the client application
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    ENCRYPTION_KEY / JWT_SECRET: must match the server's so it can read the client key
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_client(name: str, dry_run: bool = False) -> dict:
    """Register ``name`` unless it already exists.

    Returns:
        dict with client_id, name, status ('created', 'exists' or 'dry_run'),
        and for new clients client_secret and public_key
    """
    # Import here to avoid loading config before env vars are set
    from authserver.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_client_by_name(name)
    if existing:
        print(f"Client {name} already exists (id: {existing.id})")
        return {"client_id": existing.id, "name": name, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would register client: {name}")
        return {"client_id": None, "name": name, "status": "dry_run"}

    client, secret = await runtime.accounts.register_client(name)
    return {
        "client_id": client.id,
        "name": client.name,
        "status": "created",
        "client_secret": secret,
        "public_key": client.public_key,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Register an OAuth client application",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("CLIENT_NAME"),
        help="Client application name (or set CLIENT_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.name:
        print("Error: --name or CLIENT_NAME environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(bootstrap_client(args.name, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "created":
        print("\nClient registered successfully!")
        print(f"  Name: {result['name']}")
        print(f"  Client ID: {result['client_id']}")
        print(f"  Client Secret: {result['client_secret']}")
        print("  Public Key:")
        print(result["public_key"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
