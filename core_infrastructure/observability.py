"""
Logging and metrics setup.

structlog is configured once per process; modules just call
structlog.get_logger(__name__). Prometheus counters are module level so every
component increments the same collectors.
"""

import logging
import sys
from typing import Optional

import structlog
from prometheus_client import Counter, Histogram

from core_infrastructure.config_manager import get_app_config

_configured = False


def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Configure stdlib logging and structlog. Safe to call more than once."""
    global _configured
    if _configured:
        return

    app_config = get_app_config()
    level = (level or app_config.log_level).upper()
    json_output = app_config.log_json if json_output is None else json_output

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, level, logging.INFO))

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


INGESTIONS = Counter('dataset_ingestions_total', 'Ingestion attempts by source and outcome', ['source', 'status'])
INGEST_LATENCY = Histogram('dataset_ingest_latency_seconds', 'Load-merge-write latency per ingestion', ['source'])
CATEGORIES_TRUNCATED = Counter('dataset_categories_truncated_total', 'Categories dropped by the size governor')
MERGE_CONFLICTS = Counter('dataset_merge_conflicts_total', 'Series merged by append because value kinds differed')
RECORDS_REPAIRED = Counter('record_repair_total', 'Record repair outcomes', ['strategy'])
CACHE_SKIPPED = Counter('dataset_cache_skipped_total', 'Cache writes skipped because the entry exceeded the ceiling')
STORAGE_WRITES = Counter('dataset_storage_writes_total', 'Payload writes by tier', ['tier'])
BLOB_DELETIONS = Counter('blob_deletions_total', 'Blob deletion outcomes', ['status'])
