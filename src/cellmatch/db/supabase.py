"""Supabase client for the Supabase storage backend."""

import logging
from functools import lru_cache
from supabase import create_client, Client
from ..config import settings


@lru_cache()
def get_supabase_client(url: str | None = None, key: str | None = None) -> Client | None:
    """Get cached Supabase client instance.

    Args:
        url: Project URL; defaults to CELLMATCH_SUPABASE_URL.
        key: Service key; defaults to CELLMATCH_SUPABASE_KEY.

    Returns:
        Supabase Client instance if configured, None otherwise.
        Note: This does not test the connection - actual queries may fail with network errors.
    """
    url = url or settings.supabase_url
    key = key or settings.supabase_key
    if not url or not key:
        logging.warning("Supabase credentials not configured (missing URL or key)")
        return None

    try:
        return create_client(url, key)
    except Exception as e:
        logging.error(f"Failed to create Supabase client: {e}")
        return None


def check_connection(client: Client) -> dict:
    """Run a cheap query against both tables and report what is reachable."""

    report: dict = {}
    for table in ("driver_presence", "ride_requests"):
        try:
            client.table(table).select("*", count="exact").limit(1).execute()
            report[table] = True
        except Exception as exc:
            logging.warning(f"Supabase table '{table}' not reachable: {exc}")
            report[table] = False
    return report
