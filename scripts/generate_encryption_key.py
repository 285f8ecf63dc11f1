#!/usr/bin/env python3
"""Generate (or check) a master key for ENCRYPTION_KEY_M365.

Usage:
  python scripts/generate_encryption_key.py
  python scripts/generate_encryption_key.py --check <64-hex-key>
"""
from __future__ import annotations

import argparse

from studio365.core.encryption import generate_encryption_key, validate_encryption_key


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--check", metavar="KEY", help="validate an existing key instead of generating one")
    args = parser.parse_args(argv)

    if args.check is not None:
        if validate_encryption_key(args.check):
            print("Key is valid (32 bytes).")
            return 0
        print("Key is NOT valid: expected 64 hex characters.")
        return 1

    print(f"ENCRYPTION_KEY_M365={generate_encryption_key()}")
    print("Store it in your secret manager. Rotating it makes existing secrets undecryptable.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
