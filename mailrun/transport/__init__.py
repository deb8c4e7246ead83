"""SMTP delivery of composed messages."""

from mailrun.transport.auth import PlainAuth
from mailrun.transport.session import send

__all__ = ["PlainAuth", "send"]
