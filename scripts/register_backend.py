#!/usr/bin/env python3
"""Register (or update) an S3-compatible storage backend.

Credentials and the URL signing key are Fernet-encrypted with FERNET_KEY
before they are written to the storage_backends table.

Usage:
    python scripts/register_backend.py minio-local --bucket recipes \
        --endpoint-url http://localhost:9000 --access-key-id minio \
        --secret-access-key minio123 --signing-key <key> --primary

    python scripts/register_backend.py s3-eu --bucket recipes-eu --region eu-west-1 \
        --addressing-style virtual --public-base-url https://cdn.example.com \
        --signing-key <key>

Marking a backend --primary clears the flag on every other backend.
"""

import argparse
import asyncio
import sys

from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import select, update  # noqa: E402

from recipestream.database import async_session_factory  # noqa: E402
from recipestream.models import StorageBackend  # noqa: E402
from recipestream.utils.encryption import get_encryption_service  # noqa: E402


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Register an S3-compatible storage backend")
    parser.add_argument("name", help="Backend identifier recorded on every stored object")
    parser.add_argument("--bucket", required=True)
    parser.add_argument("--signing-key", required=True, help="HMAC key for signed URLs")
    parser.add_argument("--endpoint-url", default=None, help="Omit for AWS S3")
    parser.add_argument("--region", default=None)
    parser.add_argument("--addressing-style", choices=["path", "virtual"], default="path")
    parser.add_argument("--public-base-url", default=None, help="CDN base URL placed in signed URLs")
    parser.add_argument("--access-key-id", default=None)
    parser.add_argument("--secret-access-key", default=None)
    parser.add_argument("--primary", action="store_true", help="Receive all new writes")
    parser.add_argument("--inactive", action="store_true", help="Do not load into the registry")
    return parser.parse_args(argv)


async def register(args: argparse.Namespace) -> None:
    if async_session_factory is None:
        print("ERROR: DATABASE_URL is not set")
        sys.exit(1)

    encryption = get_encryption_service()

    async with async_session_factory() as db, db.begin():
        result = await db.execute(select(StorageBackend).where(StorageBackend.name == args.name))
        backend = result.scalar_one_or_none()
        created = backend is None
        if backend is None:
            backend = StorageBackend(name=args.name)
            db.add(backend)

        backend.bucket = args.bucket
        backend.endpoint_url = args.endpoint_url
        backend.region = args.region
        backend.addressing_style = args.addressing_style
        backend.public_base_url = args.public_base_url
        backend.is_active = not args.inactive
        backend.signing_key_encrypted = encryption.encrypt(args.signing_key)
        backend.access_key_id_encrypted = encryption.encrypt(args.access_key_id) if args.access_key_id else None
        backend.secret_access_key_encrypted = (
            encryption.encrypt(args.secret_access_key) if args.secret_access_key else None
        )

        if args.primary:
            await db.execute(
                update(StorageBackend).where(StorageBackend.name != args.name).values(is_primary=False)
            )
            backend.is_primary = True
        elif created:
            backend.is_primary = False

    print(f"{'Registered' if created else 'Updated'} storage backend: {args.name}")
    print(f"  bucket:  {args.bucket}")
    print(f"  primary: {backend.is_primary}")
    print(f"  active:  {backend.is_active}")


if __name__ == "__main__":
    asyncio.run(register(parse_args()))
