"""Next-best-action rules, suppression, persistence and the run pipeline."""
