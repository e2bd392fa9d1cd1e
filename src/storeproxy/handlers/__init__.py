"""HTTP request handlers for storeproxy."""
