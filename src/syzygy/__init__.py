"""Multi-agent workflow orchestrator driven by a shared stage tree."""

__version__ = "0.1.0"
