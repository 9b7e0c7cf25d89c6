"""usagechart - usage statistics from AI-agent session logs."""

__version__ = "0.1.0"
