"""Deduplicated, severity-ranked risk flags."""
