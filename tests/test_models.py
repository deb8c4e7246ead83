from __future__ import annotations

import pytest

from mailrun.errors import ConfigError
from mailrun.models import BodyKind, MessageSpec, split_list


def test_recipients_and_attachments_split_comma_lists_in_order() -> None:
    spec = MessageSpec(
        sender="a@x.com",
        recipients=" b@x.com, c@x.com,,d@x.com ",
        attachments="one.pdf,two.png",
    )

    assert spec.recipients == ("b@x.com", "c@x.com", "d@x.com")
    assert spec.attachments == ("one.pdf", "two.png")


def test_empty_recipient_string_yields_no_recipients() -> None:
    assert MessageSpec(sender="a@x.com", recipients="").recipients == ()
    assert split_list(" , ,") == []


def test_ensure_sendable_requires_sender_and_recipient() -> None:
    with pytest.raises(ConfigError):
        MessageSpec(sender="", recipients="b@x.com").ensure_sendable()

    with pytest.raises(ConfigError):
        MessageSpec(sender="a@x.com", recipients=" , ").ensure_sendable()

    MessageSpec(sender="a@x.com", recipients="b@x.com").ensure_sendable()


def test_body_kind_prefers_inline_content_over_path() -> None:
    assert MessageSpec().body_kind is BodyKind.NONE
    assert MessageSpec(content_path="body.txt").body_kind is BodyKind.FILE
    assert MessageSpec(content="hi", content_path="body.txt").body_kind is BodyKind.INLINE


def test_content_type_is_a_bare_lowercase_subtype() -> None:
    assert MessageSpec(content_type="HTML").content_type == "html"
    assert MessageSpec(content_type="").content_type == "plain"

    with pytest.raises(Exception):
        MessageSpec(content_type="text/html")


def test_message_spec_is_immutable() -> None:
    spec = MessageSpec(sender="a@x.com")

    with pytest.raises(Exception):
        spec.sender = "other@x.com"  # type: ignore[misc]
