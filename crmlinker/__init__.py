"""Link CRM records to authoritative business entries."""

__version__ = "0.1.0"
