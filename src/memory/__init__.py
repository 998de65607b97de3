"""Operator outcome history, learned weights and the memory policy engine."""
