from prometheus_client import Counter, Histogram, CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
import structlog

logger = structlog.get_logger(__name__)

# Custom registry for the image service metrics
registry = CollectorRegistry()

upload_credentials_total = Counter(
    'image_upload_credentials_total',
    'Upload credentials requested',
    ['status'],
    registry=registry
)

transforms_total = Counter(
    'image_transforms_total',
    'Transformation requests',
    ['status', 'format'],
    registry=registry
)

transform_duration_seconds = Histogram(
    'image_transform_duration_seconds',
    'End-to-end transform duration in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
    registry=registry
)

derived_size_bytes = Histogram(
    'image_derived_size_bytes',
    'Encoded size of derived images',
    buckets=[1e3, 1e4, 5e4, 1e5, 5e5, 1e6, 5e6, 1e7],
    registry=registry
)

http_request_duration_seconds = Histogram(
    'image_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint', 'status_code'],
    registry=registry
)


class PipelineMetrics:
    """Records pipeline outcomes on the service registry"""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def record_upload_credential(self, status: str):
        if self.enabled:
            upload_credentials_total.labels(status=status).inc()

    def record_transform(self, status: str, fmt: str, duration: float, size: int = None):
        if not self.enabled:
            return
        transforms_total.labels(status=status, format=fmt).inc()
        transform_duration_seconds.observe(duration)
        if size is not None:
            derived_size_bytes.observe(size)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        if self.enabled:
            http_request_duration_seconds.labels(
                method=method,
                endpoint=endpoint,
                status_code=str(status_code)
            ).observe(duration)


def get_metrics():
    """Get metrics in Prometheus format"""
    return generate_latest(registry), CONTENT_TYPE_LATEST
