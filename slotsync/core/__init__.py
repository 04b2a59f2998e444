"""Core infrastructure: dates, HTTP client pool, config, health, wiring."""
