from __future__ import annotations

"""Streaming MIME writer.

Produces a multipart/mixed message straight into a sink, one part at a time,
so attachments are never held in memory:

    headers (To, Subject, From, MIME-Version, Content-Type)
    --outer
      multipart/alternative          (only when the message has a body)
        --inner
          text/<subtype>, quoted-printable
        --inner--
    --outer
      attachment, base64             (one per attachment path, in order)
    --outer--

Boundaries start with "=_", a sequence that can never appear in
quoted-printable or base64 output.
"""

import base64
import email.quoprimime
import mimetypes
from email.charset import QP, Charset
from email.header import Header
from email.utils import encode_rfc2231, formataddr, getaddresses, quote
from pathlib import Path
from typing import BinaryIO, Iterable
from urllib.parse import quote as url_quote
from uuid import uuid4

from mailrun.errors import ComposeError, SizeEstimationError
from mailrun.mime.sink import Sink
from mailrun.models import BodyKind, MessageSpec

CRLF = b"\r\n"

# 57 raw bytes encode to exactly 76 base64 characters, the RFC 2045 line limit.
MAX_RAW = 57
MAX_LINE_LENGTH = 76

# Structural headers are written verbatim; everything else is free text.
STRUCTURAL_HEADERS = frozenset({"Content-Type", "Content-Disposition"})

# Only the display names of these are encoded; addr-specs stay parseable.
ADDRESS_HEADERS = frozenset({"From", "To"})

_QP_BATCH_BYTES = 64 * 1024

UTF8_Q = Charset("utf-8")
UTF8_Q.header_encoding = QP


def make_boundary() -> str:
    return "=_" + uuid4().hex


def encode_header_value(name: str, value: str) -> str:
    """RFC 2047 Q-encode a free-text header value when it is not plain ASCII."""
    if name in STRUCTURAL_HEADERS:
        return value
    if name in ADDRESS_HEADERS and value.isprintable():
        addresses = encode_addresses(value)
        if addresses is not None:
            return addresses
    if value.isascii() and value.isprintable():
        return value
    return Header(value, charset=UTF8_Q, header_name=name).encode(linesep="\r\n")


def encode_addresses(value: str) -> str | None:
    """Encode the display names of an address list, leaving addr-specs as-is.

    Non-ASCII addr-specs (SMTPUTF8 mailboxes) are written as raw UTF-8.
    Returns None when ``value`` does not parse as an address list.
    """
    pairs = getaddresses([value])
    if not pairs or any(not addr for _, addr in pairs):
        return None
    encoded = []
    for display, addr in pairs:
        if addr.isascii():
            encoded.append(formataddr((display, addr), charset=UTF8_Q))
        elif not display:
            encoded.append(addr)
        elif display.isascii():
            encoded.append(f'"{quote(display)}" <{addr}>')
        else:
            encoded.append(f"{Header(display, charset=UTF8_Q).encode()} <{addr}>")
    return ", ".join(encoded)


def write_headers(sink: Sink, headers: Iterable[tuple[str, str]]) -> None:
    for name, value in headers:
        sink.write(f"{name}: {encode_header_value(name, value)}\r\n".encode("utf-8"))


class MultipartSection:
    """One multipart boundary scope.

    Used as a context manager so nested sections close in LIFO order. The
    closing delimiter is only written when the block exits cleanly; after an
    error the sink is garbage anyway.
    """

    def __init__(self, sink: Sink, boundary: str | None = None) -> None:
        self.sink = sink
        self.boundary = boundary or make_boundary()
        self.parts = 0
        self.closed = False

    def content_type(self, subtype: str) -> str:
        return f'multipart/{subtype};\r\n boundary="{self.boundary}"'

    def open_part(self, headers: Iterable[tuple[str, str]]) -> None:
        if self.closed:
            raise ValueError("multipart section already closed")
        if self.parts:
            self.sink.write(f"\r\n--{self.boundary}\r\n".encode("ascii"))
        else:
            self.sink.write(f"--{self.boundary}\r\n".encode("ascii"))
        self.parts += 1
        write_headers(self.sink, headers)
        self.sink.write(CRLF)

    def close(self) -> None:
        if self.closed:
            raise ValueError("multipart section already closed")
        self.closed = True
        if self.parts:
            self.sink.write(f"\r\n--{self.boundary}--\r\n".encode("ascii"))
        else:
            self.sink.write(f"--{self.boundary}--\r\n".encode("ascii"))

    def __enter__(self) -> "MultipartSection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()


def base64_wrap(sink: Sink, source: BinaryIO) -> None:
    """Copy ``source`` into ``sink`` as base64 in 76-column CRLF lines."""
    while True:
        chunk = _read_full(source, MAX_RAW)
        if not chunk:
            return
        sink.write(base64.b64encode(chunk) + CRLF)


def _read_full(source: BinaryIO, size: int) -> bytes:
    chunk = source.read(size)
    while chunk and len(chunk) < size:
        more = source.read(size - len(chunk))
        if not more:
            break
        chunk += more
    return chunk


def quoted_printable(data: bytes) -> bytes:
    if not data:
        return b""
    # body_encode works on str; latin-1 maps each byte to one code point < 256.
    text = email.quoprimime.body_encode(data.decode("latin-1"), maxlinelen=MAX_LINE_LENGTH, eol="\r\n")
    return text.encode("ascii")


def write_quoted_printable(sink: Sink, lines: Iterable[bytes]) -> None:
    """Encode whole lines in batches so soft breaks never straddle a batch."""
    batch: list[bytes] = []
    size = 0
    for line in lines:
        batch.append(line)
        size += len(line)
        if size >= _QP_BATCH_BYTES:
            sink.write(quoted_printable(b"".join(batch)))
            batch, size = [], 0
    if batch:
        sink.write(quoted_printable(b"".join(batch)))


def attachment_headers(path: Path) -> list[tuple[str, str]]:
    ctype, encoding = mimetypes.guess_type(path.name)
    if ctype is None or encoding is not None:
        ctype = "application/octet-stream"
    basename = path.name
    if basename.isascii():
        disposition = f'attachment;\r\n filename="{quote(basename)}"'
        content_id = f"<{basename}>"
    else:
        disposition = f"attachment;\r\n filename*={encode_rfc2231(basename, 'utf-8')}"
        content_id = f"<{url_quote(basename)}>"
    return [
        ("Content-Type", ctype),
        ("Content-Transfer-Encoding", "base64"),
        ("Content-Disposition", disposition),
        ("Content-ID", content_id),
    ]


def message_headers(spec: MessageSpec) -> list[tuple[str, str]]:
    headers: list[tuple[str, str]] = []
    if spec.recipients:
        headers.append(("To", ", ".join(spec.recipients)))
    if spec.subject:
        headers.append(("Subject", spec.subject))
    if spec.sender:
        headers.append(("From", spec.sender))
    headers.append(("MIME-Version", "1.0"))
    return headers


def compose(spec: MessageSpec, sink: Sink) -> None:
    """Write the complete MIME message for ``spec`` into ``sink``.

    Raises ComposeError on any read or write failure. Partial output is left
    in the sink; the caller must discard it.
    """
    try:
        _compose(spec, sink)
    except OSError as exc:
        raise ComposeError(
            f"failed to compose message: {exc}",
            stage="compose",
            target=getattr(exc, "filename", None),
        ) from exc


def _compose(spec: MessageSpec, sink: Sink) -> None:
    with MultipartSection(sink) as mixed:
        write_headers(sink, [*message_headers(spec), ("Content-Type", mixed.content_type("mixed"))])
        sink.write(CRLF)

        kind = spec.body_kind
        if kind is not BodyKind.NONE:
            with MultipartSection(sink) as alternative:
                mixed.open_part([("Content-Type", alternative.content_type("alternative"))])
                alternative.open_part(
                    [
                        ("Content-Type", f"text/{spec.content_type}; charset=UTF-8"),
                        ("Content-Transfer-Encoding", "quoted-printable"),
                    ]
                )
                if kind is BodyKind.INLINE:
                    sink.write(quoted_printable(spec.content.encode("utf-8")))
                else:
                    with open(spec.content_path, "rb") as f:
                        write_quoted_printable(sink, f)

        for attachment in spec.attachments:
            path = Path(attachment)
            with path.open("rb") as f:
                mixed.open_part(attachment_headers(path))
                base64_wrap(sink, f)


def estimate_size(spec: MessageSpec) -> int:
    """Rough payload size: body bytes plus attachment file sizes.

    MIME overhead (headers, boundaries, base64 expansion) is not counted; the
    figure only decides between memory and spool-file sinks.
    """
    total = 0
    kind = spec.body_kind
    if kind is BodyKind.INLINE:
        total += len(spec.content.encode("utf-8"))
    elif kind is BodyKind.FILE:
        total += _stat_size(spec.content_path)
    for attachment in spec.attachments:
        total += _stat_size(attachment)
    return total


def _stat_size(path: str) -> int:
    try:
        return Path(path).stat().st_size
    except OSError as exc:
        raise SizeEstimationError(
            f"cannot stat {path}: {exc}",
            stage="estimate",
            target=path,
        ) from exc
