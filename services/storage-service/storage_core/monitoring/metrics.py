# services/storage-service/storage_core/monitoring/metrics.py
from prometheus_client import Counter, Histogram, Gauge, Info
from prometheus_fastapi_instrumentator import Instrumentator
from datetime import datetime

# Object store
objects_put = Counter(
    'storage_objects_put_total',
    'Total number of object uploads',
    ['backend', 'status']
)

objects_deleted = Counter(
    'storage_objects_deleted_total',
    'Total number of object deletes',
    ['backend', 'status']
)

bytes_uploaded = Counter(
    'storage_bytes_uploaded_total',
    'Total bytes uploaded',
    ['backend']
)

# Chunked uploads
active_chunk_sessions = Gauge(
    'storage_active_chunk_sessions',
    'Chunk sessions waiting for completion in this process\'s memory store'
)

chunks_combined = Counter(
    'storage_chunks_combined_total',
    'Total number of chunk sessions combined into one object',
    ['status']
)

# Migration
migration_items = Counter(
    'storage_migration_items_total',
    'Files processed by the migration job',
    ['result']
)

migration_runs = Counter(
    'storage_migration_runs_total',
    'Migration runs by outcome',
    ['status']
)

migration_duration = Histogram(
    'storage_migration_duration_seconds',
    'Migration run duration in seconds',
    buckets=(1, 5, 10, 30, 60, 300, 900, 1800, 3600, 7200)
)

migration_in_progress = Gauge(
    'storage_migration_in_progress',
    'Whether a scheduled migration is currently running'
)

system_info = Info('storage_system', 'System information')


class MetricsCollector:
    def __init__(self):
        self.instrumentator = Instrumentator(
            should_group_status_codes=False,
            should_ignore_untemplated=True,
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/metrics", "/health"],
            inprogress_name="storage_requests_inprogress",
            inprogress_labels=True,
        )

    def instrument_app(self, app, version: str):
        """Add automatic instrumentation to FastAPI app and expose /metrics"""
        self.instrumentator.instrument(app).expose(app, endpoint="/metrics")
        system_info.info({
            'version': version,
            'started_at': datetime.utcnow().isoformat()
        })

metrics_collector = MetricsCollector()
