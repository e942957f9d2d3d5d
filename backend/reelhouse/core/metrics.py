"""Prometheus metrics for the media pipeline"""
from prometheus_client import Counter, Gauge, REGISTRY

# Transcode metrics
try:
    transcodes_counter = Counter(
        'reelhouse_transcodes_total',
        'Total number of rendition transcodes by outcome',
        ['quality', 'status']
    )
except ValueError:
    transcodes_counter = REGISTRY._names_to_collectors.get('reelhouse_transcodes_total')

try:
    active_transcodes_gauge = Gauge(
        'reelhouse_active_transcodes',
        'Number of external media processes currently running'
    )
except ValueError:
    active_transcodes_gauge = REGISTRY._names_to_collectors.get('reelhouse_active_transcodes')

# Job metrics
try:
    processing_jobs_counter = Counter(
        'reelhouse_processing_jobs_total',
        'Total number of processing jobs by final status',
        ['status']
    )
except ValueError:
    processing_jobs_counter = REGISTRY._names_to_collectors.get('reelhouse_processing_jobs_total')

try:
    thumbnails_counter = Counter(
        'reelhouse_thumbnails_total',
        'Total number of thumbnails generated'
    )
except ValueError:
    thumbnails_counter = REGISTRY._names_to_collectors.get('reelhouse_thumbnails_total')

# Cleanup metrics
try:
    stale_assets_failed_counter = Counter(
        'reelhouse_stale_assets_failed_total',
        'Total number of stuck assets failed by the stale sweep'
    )
except ValueError:
    stale_assets_failed_counter = REGISTRY._names_to_collectors.get('reelhouse_stale_assets_failed_total')

try:
    cleanup_runs_counter = Counter(
        'reelhouse_cleanup_runs_total',
        'Total number of cleanup sweep runs',
        ['status']
    )
except ValueError:
    cleanup_runs_counter = REGISTRY._names_to_collectors.get('reelhouse_cleanup_runs_total')

# Streaming metrics
try:
    stream_requests_counter = Counter(
        'reelhouse_stream_requests_total',
        'Total number of stream requests by response status',
        ['status']
    )
except ValueError:
    stream_requests_counter = REGISTRY._names_to_collectors.get('reelhouse_stream_requests_total')

try:
    uploads_counter = Counter(
        'reelhouse_uploads_total',
        'Total number of upload attempts by outcome',
        ['status']
    )
except ValueError:
    uploads_counter = REGISTRY._names_to_collectors.get('reelhouse_uploads_total')
