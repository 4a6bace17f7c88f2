#!/usr/bin/env python3
"""Print an Argon2id hash for seeding a directory account record.

Usage:
    # Prompt for the password:
    python scripts/hash_password.py

    # Or pass it through the environment:
    SEED_PASSWORD='CorrectHorse!' python scripts/hash_password.py --email alice@example.com

With --email the output is a JSON account record ready to load into the
directory service; otherwise only the encoded hash is printed.
"""
from __future__ import annotations

import argparse
import getpass
import json
import os
import sys
import uuid
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def build_record(email: str, password_hash: str, username: str | None = None) -> dict:
    from iamauth.storage.directory import normalize_email
    from iamauth.storage.models import ACCOUNT_STATUS_ACTIVE

    return {
        "id": str(uuid.uuid4()),
        "email": normalize_email(email),
        "username": username,
        "password_hash": password_hash,
        "status": ACCOUNT_STATUS_ACTIVE,
        "failed_attempts": 0,
        "locked_until": None,
        "last_login": None,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Hash a password with Argon2id")
    parser.add_argument("--email", help="emit a full account record for this email")
    parser.add_argument("--username", help="optional username for the account record")
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="password to hash (default: SEED_PASSWORD env var, else prompt)",
    )
    args = parser.parse_args(argv)

    password = args.password or getpass.getpass("Password: ")
    if not password:
        print("Error: password must not be empty", file=sys.stderr)
        return 1

    from iamauth.service.passwords import PasswordVerifier

    password_hash = PasswordVerifier().hash(password)
    if args.email:
        print(json.dumps(build_record(args.email, password_hash, args.username), indent=2))
    else:
        print(password_hash)
    return 0


if __name__ == "__main__":
    sys.exit(main())
