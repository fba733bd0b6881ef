"""Tests for reply composition."""

import pytest

from mailresponder.config import ResponderConfig
from mailresponder.reply_builder import ReplyBuilder, reply_subject

from conftest import make_inbound


class TestReplySubject:
    @pytest.mark.parametrize(
        "subject,expected",
        [
            ("Hello", "Re: Hello"),
            ("Re: Hello", "Re: Hello"),
            ("RE: Hello", "RE: Hello"),
            ("re:Hello", "re:Hello"),
            ("Regarding the invoice", "Re: Regarding the invoice"),
            ("", "Re: "),
            (None, "Re: "),
        ],
    )
    def test_prefix(self, subject, expected):
        assert reply_subject(subject) == expected


class TestReplyBuilder:
    """Tests for ReplyBuilder."""

    def test_build_threads_reply(self, account):
        original = make_inbound(References="<root@example.com>")
        reply = ReplyBuilder(ResponderConfig(signature="The Team")).build("We open at 9.", original, account)

        assert reply.to == "alice@example.com"
        assert reply.subject == "Re: [AI_REQUEST] Opening hours"
        assert reply.in_reply_to == "msg-1@example.com"
        assert reply.references == ["root@example.com", "msg-1@example.com"]
        assert reply.source_id == "1"

    def test_default_template(self, account):
        original = make_inbound()
        body = ReplyBuilder(ResponderConfig(signature="The Team")).render_body("We open at 9.", original, account)

        assert body.startswith("We open at 9.")
        assert "--\nThe Team" in body
        assert "Alice Example <alice@example.com> wrote:" in body
        assert "> When are you open on Saturday?" in body

    def test_custom_template(self, account):
        config = ResponderConfig(reply_template="Dear {{ original.from_addr.name }},\n\n{{ reply }}\n\n{{ account.display_name }}")
        body = ReplyBuilder(config).render_body("Thanks!", make_inbound(), account)
        assert body == "Dear Alice Example,\n\nThanks!\n\nExample Support\n"

    def test_broken_template_falls_back(self, account):
        config = ResponderConfig(reply_template="{{ reply }} {{ original.nope.deeper }}")
        body = ReplyBuilder(config).render_body("Plain reply", make_inbound(), account)
        assert body == "Plain reply\n"
