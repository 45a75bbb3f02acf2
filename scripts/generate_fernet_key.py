#!/usr/bin/env python3
"""Generate the keys needed to register storage backends.

Prints a Fernet key (FERNET_KEY, encrypts backend credentials at rest) and a
random URL signing key suitable for `register_backend.py --signing-key`.

Usage:
    python scripts/generate_fernet_key.py

Security Notes:
    - Generate a unique FERNET_KEY per environment (staging, production)
    - Rotating FERNET_KEY requires re-registering every storage backend
    - Rotating a backend's signing key invalidates every signed URL issued
      for objects on that backend
"""

import secrets

from cryptography.fernet import Fernet


def main() -> None:
    """Generate and display a new Fernet key and URL signing key."""
    # 44 URL-safe base64-encoded bytes
    fernet_key = Fernet.generate_key().decode()
    signing_key = secrets.token_urlsafe(48)

    print("=" * 60)
    print("Generated Keys")
    print("=" * 60)
    print()
    print("Add this to the environment of the API and worker processes:")
    print()
    print(f"FERNET_KEY={fernet_key}")
    print()
    print("Pass this when registering a storage backend:")
    print()
    print(f"--signing-key {signing_key}")
    print()
    print("IMPORTANT:")
    print("  - Never commit these keys to version control")
    print("  - Keep a secure backup of production keys")
    print("=" * 60)


if __name__ == "__main__":
    main()
