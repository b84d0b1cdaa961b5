"""Storage, cache and network adapters for the core services."""
