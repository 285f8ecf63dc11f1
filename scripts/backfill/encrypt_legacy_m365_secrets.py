#!/usr/bin/env python3
"""Encrypt Microsoft 365 client secrets still stored as plaintext.

Idempotent: values that already look like an envelope are skipped.
Requires ENCRYPTION_KEY_M365; exits 0 if key absent (no-op).

Usage:
  python scripts/backfill/encrypt_legacy_m365_secrets.py
"""
from __future__ import annotations

import asyncio

from sqlalchemy.exc import SQLAlchemyError

from studio365.core.config import settings
from studio365.core.encryption import get_m365_cipher
from studio365.db.session import SessionLocal
from studio365.services.m365.store import CredentialStore


def main() -> int:
    if not settings.ENCRYPTION_KEY_M365:
        print("ENCRYPTION_KEY_M365 not set; skipping backfill (no-op).")
        return 0
    session = SessionLocal()
    try:
        store = CredentialStore(session, get_m365_cipher())
        updated = asyncio.run(store.encrypt_legacy_secrets())
        print(f"Backfill complete. Client secrets encrypted: {updated}")
        return 0
    except SQLAlchemyError as exc:
        session.rollback()
        print(f"Backfill failed: {exc}")
        return 1
    finally:
        session.close()


if __name__ == "__main__":
    raise SystemExit(main())
