"""Outbound notification events and the cooldown gate."""
