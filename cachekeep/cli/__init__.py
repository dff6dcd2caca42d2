"""CLI module for cachekeep."""
