"""sipag: dispatch coding-agent workers for tasks from registered projects."""

__version__ = "0.1.0"
