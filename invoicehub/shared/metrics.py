"""Prometheus metrics for the invoice service.

Exposes key metrics for monitoring:
- Request counts by endpoint and status
- Request duration histograms
- Invoice upload metrics
- Extraction metrics by provider
- Lifecycle transitions, field write failures and exports

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Upload metrics
invoices_uploaded_total = Counter(
    "invoices_uploaded_total",
    "Total invoice uploads",
    ["status"],  # success, rejected, failed
)

invoice_upload_size_bytes = Histogram(
    "invoice_upload_size_bytes",
    "Invoice document size in bytes",
    buckets=(1024, 10240, 102400, 1048576, 10485760),  # 1KB to 10MB
)

# Extraction metrics
extraction_requests_total = Counter(
    "extraction_requests_total",
    "Total extraction requests",
    ["provider", "status"],  # success, failed
)

extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "Extraction duration in seconds",
    ["provider"],
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# Lifecycle metrics
invoice_transitions_total = Counter(
    "invoice_transitions_total",
    "Invoice status transitions",
    ["from_status", "to_status"],
)

field_write_failures_total = Counter(
    "field_write_failures_total",
    "Invoice field writes that failed after a successful extraction",
)

exports_total = Counter(
    "exports_total",
    "Invoice export submissions",
    ["provider", "status"],  # success, failed
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
