"""WhatsApp gateway webhook ingestion for the CRM."""

__version__ = "1.0.0"
