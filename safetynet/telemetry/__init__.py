"""SafetyNet — Telemetry: structured logging."""

from safetynet.telemetry.logging import setup_logging

__all__ = ["setup_logging"]
