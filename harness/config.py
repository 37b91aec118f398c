from dataclasses import dataclass
import os


@dataclass(frozen=True)
class Settings:
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Two services under comparison. Names label results and events.
    target_a_name: str = os.getenv("TARGET_A_NAME", "node")
    target_b_name: str = os.getenv("TARGET_B_NAME", "bun")
    target_a_url: str = os.getenv("NODE_SERVICE_URL", "http://localhost:3000")
    target_b_url: str = os.getenv("BUN_SERVICE_URL", "http://localhost:3001")

    # Well-known paths on the targets
    health_path: str = os.getenv("HEALTH_PATH", "/api/health")
    metrics_path: str = os.getenv("METRICS_PATH", "/api/performance/metrics")

    probe_timeout_s: float = float(os.getenv("PROBE_TIMEOUT_S", "5.0"))
    request_timeout_s: float = float(os.getenv("REQUEST_TIMEOUT_S", "10.0"))

    monitor_interval_s: float = float(os.getenv("MONITOR_INTERVAL_S", "2.0"))
    snapshot_interval_s: float = float(os.getenv("SNAPSHOT_INTERVAL_S", "5.0"))

    # Worker pool
    max_batch_size: int = int(os.getenv("MAX_BATCH_SIZE", "100"))
    batch_gap_s: float = float(os.getenv("BATCH_GAP_S", "1.0"))
    per_user_ramp_ms: int = int(os.getenv("PER_USER_RAMP_MS", "5"))
    backoff_scale: float = float(os.getenv("BACKOFF_SCALE", "1.0"))
    latency_window: int = int(os.getenv("LATENCY_WINDOW", "100"))

    # External benchmarking tool (oha)
    use_external_tool: bool = os.getenv("USE_EXTERNAL_TOOL", "0") == "1"
    external_tool_path: str = os.getenv("EXTERNAL_TOOL_PATH", "oha")
    external_max_connections: int = int(os.getenv("EXTERNAL_MAX_CONNECTIONS", "50"))
    external_timeout_grace_s: float = float(os.getenv("EXTERNAL_TIMEOUT_GRACE_S", "30.0"))

    # "balanced" or "memory"
    scoring_profile: str = os.getenv("SCORING_PROFILE", "balanced").lower()

    # Finished sessions are kept in memory this long
    session_retention_s: float = float(os.getenv("SESSION_RETENTION_S", "3600"))
    cleanup_interval_s: float = float(os.getenv("CLEANUP_INTERVAL_S", "60"))


settings = Settings()
