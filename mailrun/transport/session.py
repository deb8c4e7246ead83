from __future__ import annotations

"""SMTP session driver.

Runs one strictly ordered conversation per message:

    connect → EHLO/HELO → [STARTTLS → EHLO] → [AUTH] → MAIL FROM
        → RCPT TO (each recipient) → DATA → <payload> → . → QUIT

Every step waits for its success reply before the next command is issued; the
first failure aborts the conversation. The composed message is streamed from
the sink as-is, with only SMTP dot-stuffing applied, so large spooled messages
are never loaded into memory. The connection is closed on every exit path.
"""

import logging
import smtplib
import ssl
import time
from contextlib import contextmanager
from typing import BinaryIO, Iterator

from mailrun.config import SmtpSettings
from mailrun.errors import ProtocolError, TransportError
from mailrun.mime.sink import Sink
from mailrun.models import MessageSpec
from mailrun.storage.runs import StructuredLogger
from mailrun.transport.auth import SmtpAuth, reply_text

logger = logging.getLogger(__name__)

CRLF = b"\r\n"
_SEND_CHUNK = 64 * 1024


def send(
    spec: MessageSpec,
    auth: SmtpAuth | None,
    body: BinaryIO,
    *,
    settings: SmtpSettings,
    run_logger: StructuredLogger,
) -> None:
    """Deliver the composed message in ``body`` to every recipient of ``spec``.

    ``body`` is rewound first when it is seekable. Without ``auth`` the AUTH
    step is skipped (open relays, local test servers).

    Raises ConfigError before connecting when sender or recipients are
    missing, TransportError for connection failures and ProtocolError for any
    rejected command.
    """
    spec.ensure_sendable()

    target = f"smtp://{settings.host}"
    start = time.perf_counter()
    client = _connect(settings, target)
    run_logger.info("smtp_connected", stage="connect", target=target)
    try:
        try:
            _converse(client, spec, auth, body, settings=settings, target=target, run_logger=run_logger)
        except Exception:
            _abort(client, target, run_logger)
            raise
        with _smtp_step("quit", target):
            code, resp = client.docmd("QUIT")
        _expect(code, {221}, resp, stage="quit", target=target)
    finally:
        client.close()

    run_logger.info(
        "smtp_session_finished",
        stage="quit",
        target=target,
        recipients=len(spec.recipients),
        latency_ms=int((time.perf_counter() - start) * 1000),
    )


def _connect(settings: SmtpSettings, target: str) -> smtplib.SMTP:
    # local_hostname avoids a getfqdn() lookup; EHLO names are passed explicitly.
    client = smtplib.SMTP(local_hostname=settings.hostname, timeout=settings.timeout_seconds)
    if settings.debug:
        client.set_debuglevel(1)
    try:
        client.connect(settings.hostname, settings.port)
    except (smtplib.SMTPException, OSError) as exc:
        client.close()
        raise TransportError(
            f"cannot connect to {settings.host}: {exc}",
            stage="connect",
            target=target,
        ) from exc
    return client


def _converse(
    client: smtplib.SMTP,
    spec: MessageSpec,
    auth: SmtpAuth | None,
    body: BinaryIO,
    *,
    settings: SmtpSettings,
    target: str,
    run_logger: StructuredLogger,
) -> None:
    host = settings.hostname
    _hello(client, host, target)

    encrypted = False
    if client.has_extn("starttls"):
        # A failed upgrade is fatal; never fall back to plaintext.
        with _smtp_step("starttls", target, io_error=ProtocolError):
            client.starttls(context=ssl.create_default_context())
        encrypted = True
        run_logger.info("smtp_tls_started", stage="starttls", target=target)
        _hello(client, host, target)

    if auth is not None:
        with _smtp_step("auth", target):
            auth.authenticate(client, host=host, encrypted=encrypted)
        run_logger.info("smtp_authenticated", stage="auth", target=target)

    mail_options: tuple[str, ...] = ()
    if client.has_extn("smtputf8") and not all(a.isascii() for a in (spec.sender, *spec.recipients)):
        mail_options = ("SMTPUTF8",)

    with _smtp_step("mail", target):
        code, resp = client.mail(spec.sender, mail_options)
    _expect(code, {250}, resp, stage="mail", target=target)

    for addr in spec.recipients:
        with _smtp_step("rcpt", target):
            code, resp = client.rcpt(addr)
        if code not in {250, 251}:
            run_logger.warning(
                "smtp_recipient_rejected",
                stage="rcpt",
                target=target,
                recipient=addr,
                smtp_code=code,
            )
        _expect(code, {250, 251}, resp, stage="rcpt", target=target)

    with _smtp_step("data", target):
        code, resp = client.docmd("DATA")
    _expect(code, {354}, resp, stage="data", target=target)

    with _smtp_step("data", target):
        sent = _stream_body(client, body)
        code, resp = client.getreply()
    _expect(code, {250}, resp, stage="data", target=target)
    run_logger.info("smtp_data_sent", stage="data", target=target, bytes_sent=sent)


def _hello(client: smtplib.SMTP, host: str, target: str) -> None:
    with _smtp_step("hello", target):
        code, resp = client.ehlo(host)
        if code != 250:
            logger.debug("EHLO refused with %s, falling back to HELO", code)
            code, resp = client.helo(host)
    _expect(code, {250}, resp, stage="hello", target=target)


def _stream_body(client: smtplib.SMTP, body: BinaryIO) -> int:
    """Send ``body`` as the DATA payload followed by the end-of-data marker."""
    if isinstance(body, Sink):
        body.rewind()
    elif hasattr(body, "seekable") and body.seekable():
        body.seek(0)

    sent = 0
    pending = bytearray()
    last = CRLF
    for line in body:
        if line.startswith(b"."):
            pending += b"."
        pending += line
        last = line
        if len(pending) >= _SEND_CHUNK:
            client.send(bytes(pending))
            sent += len(pending)
            pending.clear()
    if not last.endswith(b"\n"):
        pending += CRLF
    pending += b".\r\n"
    client.send(bytes(pending))
    return sent + len(pending)


def _abort(client: smtplib.SMTP, target: str, run_logger: StructuredLogger) -> None:
    """Say QUIT after a failed step; the first error is what the caller sees."""
    if client.sock is None:
        return
    try:
        client.docmd("QUIT")
    except (smtplib.SMTPException, OSError) as exc:
        run_logger.warning(
            "smtp_quit_failed",
            stage="quit",
            target=target,
            error_type=exc.__class__.__name__,
            error_message=str(exc),
        )


def _expect(code: int, accepted: set[int], resp: bytes | str, *, stage: str, target: str) -> None:
    if code in accepted:
        return
    raise ProtocolError(
        f"{stage} rejected: {code} {reply_text(resp)}",
        stage=stage,
        target=target,
        code=code,
    )


@contextmanager
def _smtp_step(
    stage: str,
    target: str,
    *,
    io_error: type[TransportError] | type[ProtocolError] = TransportError,
) -> Iterator[None]:
    """Translate smtplib and socket failures into mailrun errors."""
    try:
        yield
    except smtplib.SMTPServerDisconnected as exc:
        raise TransportError(f"connection lost during {stage}: {exc}", stage=stage, target=target) from exc
    except smtplib.SMTPResponseException as exc:
        raise ProtocolError(
            f"{stage} rejected: {exc.smtp_code} {reply_text(exc.smtp_error)}",
            stage=stage,
            target=target,
            code=exc.smtp_code,
        ) from exc
    except smtplib.SMTPException as exc:
        raise ProtocolError(f"{stage} failed: {exc}", stage=stage, target=target) from exc
    except OSError as exc:
        raise io_error(f"{stage} failed: {exc}", stage=stage, target=target) from exc
    except UnicodeEncodeError as exc:
        # smtplib encodes commands as ASCII unless SMTPUTF8 was negotiated.
        raise ProtocolError(f"{stage} failed: non-ASCII command text: {exc}", stage=stage, target=target) from exc
