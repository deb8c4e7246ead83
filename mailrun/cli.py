from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from mailrun.config import SmtpSettings, load_config
from mailrun.errors import ConfigError, MailRunError
from mailrun.models import MessageSpec
from mailrun.runner import run_mail

# CLI flag dest → MessageSpec field
_MESSAGE_FLAGS = {
    "sender": "sender",
    "to": "recipients",
    "subject": "subject",
    "content": "content",
    "content_path": "content_path",
    "type": "content_type",
    "attachments": "attachments",
}

# Field aliases accepted in --message files, mirroring the flag names
_FILE_ALIASES = {"from": "sender", "to": "recipients", "type": "content_type"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mailrun", description="Compose and send a MIME email over SMTP")
    subparsers = parser.add_subparsers(dest="command")

    send_parser = subparsers.add_parser("send", help="Compose a message and send it")
    send_parser.add_argument("--message", default=None, help="path to a YAML/JSON message description")
    send_parser.add_argument("--from", dest="sender", default=None, help="sender address")
    send_parser.add_argument("--to", default=None, help="comma-delimited recipient addresses")
    send_parser.add_argument("--subject", default=None)
    send_parser.add_argument("--content", default=None, help="inline body text")
    send_parser.add_argument("--content-path", default=None, help="read the body from this file")
    send_parser.add_argument("--type", default=None, help="body text subtype (plain, html)")
    send_parser.add_argument("--attachments", default=None, help="comma-delimited attachment paths")
    send_parser.add_argument("--host", default=None, help="SMTP server as hostname:port")
    send_parser.add_argument("--user", default=None, help="SMTP username")
    send_parser.add_argument("--password", default=None, help="SMTP password")
    send_parser.add_argument("--spool-dir", default=None, help="directory for large-message spool files")
    send_parser.add_argument("--env-file", default=".env", help="dotenv file with SMTP_* settings")

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint.

    Builds a MessageSpec from --message and the message flags (flags win),
    applies connection overrides to the loaded config and runs one send.
    Prints nothing on success; prints the error to stderr and returns 1 on
    failure.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command != "send":
        parser.print_help()
        return 1

    try:
        fields: dict[str, Any] = {}
        if args.message:
            fields.update(load_message_file(Path(args.message)))
        for flag, field in _MESSAGE_FLAGS.items():
            value = getattr(args, flag)
            if value is not None:
                fields[field] = value
        request = MessageSpec(**fields)

        cfg = load_config(env_file=args.env_file)
        smtp_update = {
            key: value
            for key, value in (("host", args.host), ("username", args.user), ("password", args.password))
            if value is not None
        }
        if smtp_update:
            cfg = cfg.model_copy(update={"smtp": SmtpSettings(**{**cfg.smtp.model_dump(), **smtp_update})})
        if args.spool_dir:
            cfg = cfg.model_copy(update={"spool_dir": Path(args.spool_dir)})

        run_mail(request=request, config=cfg)
    except (MailRunError, ValidationError) as exc:
        print(f"[mailrun] {exc.__class__.__name__}: {exc}", file=sys.stderr)
        return 1
    return 0


def load_message_file(path: Path) -> dict[str, Any]:
    """Read a message description; keys match the CLI flags or MessageSpec fields."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read message file {path}: {exc}") from exc

    suffix = path.suffix.lower()
    if suffix not in {".yaml", ".yml", ".json"}:
        raise ConfigError("message file must be yaml/yml/json")
    try:
        raw = json.loads(text) if suffix == ".json" else yaml.safe_load(text)
    except (yaml.YAMLError, ValueError) as exc:
        raise ConfigError(f"cannot parse message file {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError("message file content must be a mapping")
    return {_FILE_ALIASES.get(str(key), str(key)): value for key, value in raw.items()}
