"""
Metrics Collection with Prometheus.

Exposes gating, consumption and system metrics for monitoring.
"""

from enum import StrEnum

from prometheus_client import Counter, Gauge, Histogram, Info

from gatekeeper.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    FEATURE = "feature"
    TOKEN_TYPE = "token_type"
    ERROR_TYPE = "error_type"


class EntitlementMetrics:
    """
    Centralized metrics for the entitlements API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Feature checks (rate, allowed/denied)
    - Consumptions (rate, outcome, debit source)
    - Token movements (debits and credits by pool)
    - Storage (version conflicts, failures)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "entitlements_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "entitlements_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "entitlements_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "entitlements_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Gating Metrics
        # ====================================================================
        self.feature_checks_total = Counter(
            "entitlements_feature_checks_total",
            "Total feature gate evaluations",
            [MetricLabels.FEATURE, "allowed", "reason"],
        )

        self.consumptions_total = Counter(
            "entitlements_consumptions_total",
            "Total feature consumptions",
            [MetricLabels.FEATURE, "success", "tokens_used"],
        )

        self.consumption_duration_seconds = Histogram(
            "entitlements_consumption_duration_seconds",
            "Consumption duration in seconds (load, evaluate, write)",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # Token Metrics
        # ====================================================================
        self.tokens_debited_total = Counter(
            "entitlements_tokens_debited_total",
            "Tokens spent by pool",
            [MetricLabels.TOKEN_TYPE],
        )

        self.tokens_credited_total = Counter(
            "entitlements_tokens_credited_total",
            "Tokens added by pool and source",
            [MetricLabels.TOKEN_TYPE, "source"],
        )

        # ====================================================================
        # Storage Metrics
        # ====================================================================
        self.concurrency_conflicts_total = Counter(
            "entitlements_concurrency_conflicts_total",
            "Compare-and-swap writes rejected because the version moved",
        )

        self.storage_errors_total = Counter(
            "entitlements_storage_errors_total",
            "Entitlement store failures",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "entitlements_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_feature_check(self, feature: str, allowed: bool, reason: str | None) -> None:
        """Record feature check metrics."""
        self.feature_checks_total.labels(
            feature=feature, allowed=str(allowed), reason=reason or "none"
        ).inc()

    def record_consumption(
        self, feature: str, success: bool, tokens_used: bool, duration: float
    ) -> None:
        """Record consumption metrics."""
        self.consumptions_total.labels(
            feature=feature, success=str(success), tokens_used=str(tokens_used)
        ).inc()
        self.consumption_duration_seconds.observe(duration)

    def record_token_debit(self, token_type: str, amount: int) -> None:
        """Record tokens spent."""
        self.tokens_debited_total.labels(token_type=token_type).inc(amount)

    def record_token_credit(self, token_type: str, source: str, amount: int) -> None:
        """Record tokens added."""
        self.tokens_credited_total.labels(token_type=token_type, source=source).inc(amount)

    def record_concurrency_conflict(self) -> None:
        """Record a rejected compare-and-swap write."""
        self.concurrency_conflicts_total.inc()

    def record_storage_error(self, operation: str) -> None:
        """Record a store failure."""
        self.storage_errors_total.labels(operation=operation).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = EntitlementMetrics()
