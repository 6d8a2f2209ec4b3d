# token_store.py
"""Credential provider.

The core never reads credentials itself: a provider returns an explicit
`Credentials` value for a caller and that value is handed to each
`GraphClient`.

Sources (CREDENTIAL_SOURCE):
  env  - META_ACCESS_TOKEN / META_AD_ACCOUNT_ID / META_PAGE_ID / META_PIXEL_ID
  db   - row in `ad_credentials` keyed by user id (DATABASE_URL)
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional

import psycopg
from dotenv import load_dotenv

from config import Credentials


class CredentialError(RuntimeError):
    pass


@dataclass(frozen=True)
class StoredCredentials:
    access_token: str
    ad_account_id: str
    page_id: str
    pixel_id: Optional[str]
    expires_at: Optional[datetime]


def get_stored_credentials(database_url: str, *, user_id: str) -> Optional[StoredCredentials]:
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT access_token, ad_account_id, page_id, pixel_id, expires_at
                FROM ad_credentials
                WHERE user_id = %s
                """,
                (user_id,),
            )
            row = cur.fetchone()
            if not row:
                return None
            access_token, ad_account_id, page_id, pixel_id, expires_at = row
            return StoredCredentials(
                access_token=access_token,
                ad_account_id=str(ad_account_id),
                page_id=str(page_id),
                pixel_id=str(pixel_id) if pixel_id else None,
                expires_at=expires_at,
            )


class EnvCredentialProvider:
    """Single-tenant credentials from the process environment."""

    def get(self, user_id: Optional[str] = None) -> Credentials:
        load_dotenv(override=False)
        token = (os.getenv("META_ACCESS_TOKEN") or "").strip()
        account_id = (os.getenv("META_AD_ACCOUNT_ID") or "").strip()
        page_id = (os.getenv("META_PAGE_ID") or "").strip()
        if not token:
            raise CredentialError("Missing META_ACCESS_TOKEN in environment (.env).")
        if not account_id:
            raise CredentialError("Missing META_AD_ACCOUNT_ID in environment (.env).")
        if not page_id:
            raise CredentialError("Missing META_PAGE_ID in environment (.env).")
        return Credentials(
            bearer_token=token,
            ad_account_id=account_id,
            page_id=page_id,
            pixel_id=(os.getenv("META_PIXEL_ID") or "").strip() or None,
            app_id=(os.getenv("META_APP_ID") or "").strip() or None,
            app_secret=(os.getenv("META_APP_SECRET") or "").strip() or None,
        )


class DbCredentialProvider:
    """Per-user credentials from Postgres. Tokens are stored already decrypted upstream."""

    def __init__(self, database_url: str, *, refresh_buffer_minutes: int = 10):
        self.database_url = database_url
        self.refresh_buffer_minutes = refresh_buffer_minutes

    def get(self, user_id: Optional[str] = None) -> Credentials:
        if not user_id:
            raise CredentialError("CREDENTIAL_SOURCE=db requires a user id (X-User-Id).")
        stored = get_stored_credentials(self.database_url, user_id=user_id)
        if not stored:
            raise CredentialError(f"No credentials found in ad_credentials for user_id='{user_id}'.")

        now = datetime.now(timezone.utc)
        if stored.expires_at and stored.expires_at <= now + timedelta(minutes=self.refresh_buffer_minutes):
            # Refreshing belongs to the token manager; fail fast here.
            raise CredentialError(
                f"Token for user_id='{user_id}' is expired/near-expiry (expires_at={stored.expires_at.isoformat()})."
            )

        return Credentials(
            bearer_token=stored.access_token,
            ad_account_id=stored.ad_account_id,
            page_id=stored.page_id,
            pixel_id=stored.pixel_id,
            app_secret=(os.getenv("META_APP_SECRET") or "").strip() or None,
        )


def build_credential_provider():
    """Factory: env (default) or Postgres.

    Enable the Postgres provider by setting:
      CREDENTIAL_SOURCE=db
      DATABASE_URL=...
    """
    source = (os.getenv("CREDENTIAL_SOURCE") or "").strip().lower()
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if source == "db":
        if not database_url:
            raise ValueError("CREDENTIAL_SOURCE=db but DATABASE_URL is not set.")
        return DbCredentialProvider(database_url)
    return EnvCredentialProvider()
