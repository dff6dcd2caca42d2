"""cachekeep - prompt-cache continuity and compaction for coding-agent proxies."""

__version__ = "0.1.0"
__logo__ = "🗝️"
