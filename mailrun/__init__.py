"""Compose MIME email messages and deliver them over SMTP."""

__version__ = "0.1.0"
