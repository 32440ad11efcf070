"""SafetyNet: governance proposal lifecycle and weighted voting engine."""

__version__ = "0.1.0"
