from __future__ import annotations

import base64
import smtplib
from dataclasses import dataclass
from typing import Protocol

from mailrun.errors import ProtocolError

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class SmtpAuth(Protocol):
    def authenticate(self, client: smtplib.SMTP, *, host: str, encrypted: bool) -> None:
        """Run the AUTH exchange on an already greeted connection."""


@dataclass(frozen=True)
class PlainAuth:
    """AUTH PLAIN with a username and password.

    Credentials are only sent over TLS, or in the clear to a local server.
    The initial response is UTF-8, so non-ASCII passwords work.
    """

    username: str
    password: str
    host: str
    identity: str = ""

    def authenticate(self, client: smtplib.SMTP, *, host: str, encrypted: bool) -> None:
        if not encrypted and host not in LOCAL_HOSTS:
            raise ProtocolError("unencrypted connection", stage="auth", target=host)
        if host != self.host:
            raise ProtocolError("wrong host name", stage="auth", target=host)

        # smtplib.SMTP.auth ASCII-encodes the response, so the exchange is built here.
        code, resp = client.docmd("AUTH", f"PLAIN {self.initial_response()}")
        if code != 235:
            raise ProtocolError(
                f"authentication failed: {code} {reply_text(resp)}",
                stage="auth",
                target=host,
                code=code,
            )

    def initial_response(self) -> str:
        raw = f"{self.identity}\0{self.username}\0{self.password}".encode("utf-8")
        return base64.b64encode(raw).decode("ascii")


def reply_text(value: bytes | str) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
