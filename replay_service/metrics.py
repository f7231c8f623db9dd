"""Prometheus metrics for the replay pipeline.

Counters are module level so every service instance in the process shares
them. ``start_metrics_server_if_enabled`` exposes them when ``METRICS_PORT``
is configured.
"""

import logging

from prometheus_client import Counter, Gauge, start_http_server

from .config import get_settings

logger = logging.getLogger(__name__)

replay_samples_total = Counter("replay_samples_total", "Replay samples finished", ["status"])
replay_sample_retries_total = Counter("replay_sample_retries_total", "Replay sample retries", ["reason"])
replay_lookahead_violations_total = Counter("replay_lookahead_violations_total", "Lookahead violations detected")
replay_states_persisted_total = Counter("replay_states_persisted_total", "Replay states written", ["result"])
replay_batches_active = Gauge("replay_batches_active", "Replay batches currently running")
replay_vendor_calls_total = Counter("replay_vendor_calls_total", "Market-data vendor calls", ["result"])
outcome_labels_total = Counter("outcome_labels_total", "Outcome labeling results", ["result"])


def start_metrics_server_if_enabled() -> None:
    cfg = get_settings()
    if not cfg.METRICS_PORT:
        return
    try:
        start_http_server(cfg.METRICS_PORT)
        logger.info("metrics exporter listening on %s", cfg.METRICS_PORT)
    except OSError:
        logger.exception("failed to start metrics server")
