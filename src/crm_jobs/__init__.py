"""Background job processing and external-call resilience for a multi-tenant CRM."""

__version__ = "0.1.0"
