"""Prompt text used by compaction."""
