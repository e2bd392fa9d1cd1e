"""Storage backends for storeproxy."""
