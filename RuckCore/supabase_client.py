"""
Lazily created Supabase client used by SupabaseSessionStore.
"""
import os
import logging
import threading
from dotenv import load_dotenv
from supabase import create_client, Client
from supabase.lib.client_options import ClientOptions

from .errors import StorageError

logger = logging.getLogger(__name__)

load_dotenv()

DEFAULT_POSTGREST_TIMEOUT_S = 10

_client = None
_client_guard = threading.Lock()


def _credentials():
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or os.environ.get("SUPABASE_KEY")
    if not url or not key:
        raise StorageError("Session storage is not configured",
                           details="set SUPABASE_URL and SUPABASE_KEY (or SUPABASE_SERVICE_ROLE_KEY)")
    return url, key


def get_supabase_client() -> Client:
    """
    Shared client for the session tables. Session rows are written by the
    backend on the athlete's behalf, so the service-role key is preferred.
    """
    global _client
    with _client_guard:
        if _client is not None:
            return _client
        url, key = _credentials()
        timeout = int(os.environ.get("SUPABASE_TIMEOUT_S") or DEFAULT_POSTGREST_TIMEOUT_S)
        try:
            _client = create_client(url, key, ClientOptions(
                auto_refresh_token=False,
                persist_session=False,
                postgrest_client_timeout=timeout,
            ))
        except Exception as e:
            logger.error(f"[STORAGE] Could not create Supabase client: {e}")
            raise StorageError("Could not connect to session storage", details=str(e)) from e
        logger.info(f"[STORAGE] Supabase client ready (timeout {timeout}s)")
        return _client
