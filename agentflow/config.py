"""
Engine configuration.

Defaults come from the environment so that the Flask entry point and the
test-suite can share one configuration object:

- AGENTFLOW_THREAD_WORKERS: In-process worker pool size (default: 4)
- AGENTFLOW_WORKER_ENDPOINT: Base URL of a remote worker service (default: unset)
- AGENTFLOW_WORKER_TIMEOUT: HTTP timeout in seconds for the remote service (default: 30)
- AGENTFLOW_LOG_LEVEL: Logging level name (default: INFO)
"""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MAX_THREAD_WORKERS = 32


@dataclass
class EngineConfig:
    """
    Configuration for the scheduling engine and its worker backends.

    Attributes:
        thread_workers: Threads used by the in-process backend.
        worker_endpoint: Remote worker service URL; enables the HTTP backend when set.
        worker_timeout: Timeout for requests to the remote worker service.
        log_level: Logging level name applied by the HTTP entry point.
        layout_center_x: Horizontal center of every layout level.
        layout_horizontal_spacing: Distance between nodes on the same level.
        layout_vertical_spacing: Distance between consecutive levels.
    """
    thread_workers: int = int(os.environ.get('AGENTFLOW_THREAD_WORKERS', '4'))
    worker_endpoint: str | None = os.environ.get('AGENTFLOW_WORKER_ENDPOINT') or None
    worker_timeout: float = float(os.environ.get('AGENTFLOW_WORKER_TIMEOUT', '30'))
    log_level: str = os.environ.get('AGENTFLOW_LOG_LEVEL', 'INFO')
    layout_center_x: float = 100.0
    layout_horizontal_spacing: float = 250.0
    layout_vertical_spacing: float = 150.0

    def __post_init__(self):
        """Validate configuration values."""
        if self.thread_workers < 1:
            raise ValueError("thread_workers must be >= 1")
        if self.thread_workers > MAX_THREAD_WORKERS:
            raise ValueError(f"thread_workers must be <= {MAX_THREAD_WORKERS}")
        if self.thread_workers > 16:
            logger.warning(f"High thread count ({self.thread_workers}) may cause overhead")
        if self.worker_timeout <= 0:
            raise ValueError("worker_timeout must be > 0")
        if self.layout_horizontal_spacing <= 0 or self.layout_vertical_spacing <= 0:
            raise ValueError("layout spacing must be > 0")
        self.log_level = self.log_level.upper()
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Unknown log level: {self.log_level}")
