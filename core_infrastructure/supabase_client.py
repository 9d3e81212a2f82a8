"""
Supabase Client
===============

Thread-safe lazily created Supabase client shared by the blob store and the
dataset repository.

Configuration via environment variables:
- SUPABASE_URL: Supabase project URL
- SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_SERVICE_KEY): service role key
"""

import os
import threading
import structlog
from typing import Optional

from supabase import Client, create_client

logger = structlog.get_logger(__name__)

# Global lock for thread-safe singleton
_client_lock = threading.Lock()
_client_instance: Optional[Client] = None


def _create() -> Client:
    url = os.getenv('SUPABASE_URL')
    key = os.getenv('SUPABASE_SERVICE_ROLE_KEY') or os.getenv('SUPABASE_SERVICE_KEY')
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_SERVICE_KEY) must be set")
    if not url.startswith(('http://', 'https://')):
        logger.warning("supabase_url_without_scheme", url=url)

    client = create_client(url, key)
    logger.info("supabase_client_created", url=url[:50])
    return client


def get_supabase_client() -> Client:
    """Get or create the singleton Supabase client."""
    global _client_instance

    if _client_instance is None:
        with _client_lock:
            if _client_instance is None:
                _client_instance = _create()

    return _client_instance

