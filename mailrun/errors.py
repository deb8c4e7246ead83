from __future__ import annotations


class MailRunError(Exception):
    """Base error type for application-specific exceptions."""


class ExternalCallError(MailRunError):
    """Raised for failures while talking to the filesystem or the mail server."""

    def __init__(self, message: str, *, stage: str, target: str | None = None):
        super().__init__(message)
        self.stage = stage
        self.target = target


class ConfigError(MailRunError):
    """Required message or connection fields are missing."""


class SizeEstimationError(ExternalCallError):
    """A content or attachment path could not be stat'd."""


class ComposeError(ExternalCallError):
    """Writing the MIME message into the sink failed."""


class TransportError(ExternalCallError):
    """The connection to the mail server failed or dropped."""


class ProtocolError(ExternalCallError):
    """The mail server rejected a command or answered out of sequence."""

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        target: str | None = None,
        code: int | None = None,
    ):
        super().__init__(message, stage=stage, target=target)
        self.code = code
