"""agent-relay: multi-agent orchestration for software change tasks."""

__version__ = "0.1.0"
