"""Infrastructure services: database, key-value store, rate limiting."""
