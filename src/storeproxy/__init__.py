"""storeproxy: an HTTP front for a single object storage bucket."""

__version__ = "0.1.0"
