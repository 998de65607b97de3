"""Composite health scoring, banding and transition events."""
