"""Time-partitioned telemetry storage engine."""
