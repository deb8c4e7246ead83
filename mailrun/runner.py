from __future__ import annotations

"""Mail run orchestrator (the main entrypoint behind the CLI).

One call → one message delivered (or one error raised):

1) Validate sender/recipients (no I/O yet)
2) Estimate the payload size from the body and attachment files
3) Open a sink: memory below MEMORY_MAX_SIZE, spool file at or above it
4) Compose the MIME message into the sink
5) Stream the sink to the SMTP server
6) Close the sink (a spool file is deleted here, success or failure)

There is no retry and no partial success: the first error is logged and
re-raised unchanged.
"""

import time
from uuid import uuid4

from mailrun.config import AppConfig, load_config
from mailrun.errors import MailRunError
from mailrun.mime.sink import open_sink
from mailrun.mime.writer import compose, estimate_size
from mailrun.models import MessageSpec, RunResult, utc_now_iso
from mailrun.storage.runs import StructuredLogger
from mailrun.transport.auth import PlainAuth
from mailrun.transport.session import send


def run_mail(
    *,
    request: MessageSpec,
    config: AppConfig | None = None,
    logger: StructuredLogger | None = None,
) -> RunResult:
    """Compose ``request`` and send it through the configured SMTP server."""
    cfg = config or load_config()
    run_id = uuid4().hex[:12]
    started_at = utc_now_iso()
    logger = logger or StructuredLogger(path=cfg.log_path, run_id=run_id, log_level=cfg.log_level)

    logger.info(
        "mail_run_started",
        stage="runner",
        target=cfg.smtp.host,
        sender=request.sender,
        recipients=list(request.recipients),
        attachments=len(request.attachments),
        body=request.body_kind.value,
    )

    try:
        request.ensure_sendable()

        estimated = estimate_size(request)
        logger.info("mail_size_estimated", stage="estimate", estimated_size=estimated)

        with open_sink(estimated, spool_dir=cfg.spool_dir) as sink:
            compose_start = time.perf_counter()
            compose(request, sink)
            sink.flush()
            composed = sink.written
            logger.info(
                "mail_composed",
                stage="compose",
                sink=sink.kind,
                composed_size=composed,
                latency_ms=int((time.perf_counter() - compose_start) * 1000),
            )

            auth = None
            if cfg.smtp.has_credentials:
                auth = PlainAuth(
                    username=str(cfg.smtp.username),
                    password=str(cfg.smtp.password),
                    host=cfg.smtp.hostname,
                )
            send(request, auth, sink, settings=cfg.smtp, run_logger=logger)
            sink_kind = sink.kind
    except MailRunError as exc:
        logger.error(
            "mail_run_failed",
            stage=getattr(exc, "stage", "runner"),
            error_type=exc.__class__.__name__,
            error_message=str(exc),
            target=getattr(exc, "target", None),
        )
        raise

    logger.info("mail_sent", stage="runner", recipients=list(request.recipients))
    return RunResult(
        run_id=logger.run_id,
        status="sent",
        sink=sink_kind,
        estimated_size=estimated,
        composed_size=composed,
        recipients=list(request.recipients),
        started_at=started_at,
        finished_at=utc_now_iso(),
    )
