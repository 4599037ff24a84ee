"""WarmClaw: per-chat agent container orchestration with a warm standby pool."""

__version__ = "0.1.0"
