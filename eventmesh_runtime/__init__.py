"""Event mesh runtime: consumer and producer groups, request validation, push delivery and servers."""

__version__ = "0.1.0"