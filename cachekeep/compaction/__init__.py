"""Conversation compaction."""
