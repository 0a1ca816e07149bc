"""
Tests for payoutwatch/messaging/sender.py
"""

import pytest
from unittest.mock import Mock

import requests

from payoutwatch.errors import DeliveryFailure
from payoutwatch.messaging import DiscordSender, LoggingSender, split_message


class TestSplitMessage:
    """Tests for split_message."""

    def test_short_message_unchanged(self):
        """Text within the limit is a single chunk."""
        assert split_message("hello\nworld", 2000) == ["hello\nworld"]

    def test_split_at_last_newline(self):
        """Oversized text is cut at the last line break before the limit."""
        text = "a" * 1500 + "\n" + "b" * 300 + "\n" + "c" * 1000
        chunks = split_message(text, 2000)

        assert chunks == ["a" * 1500 + "\n" + "b" * 300, "c" * 1000]
        assert all(len(c) <= 2000 for c in chunks)

    def test_hard_cut_without_newline(self):
        """Text with no line break is cut at the limit."""
        chunks = split_message("z" * 4500, 2000)
        assert [len(c) for c in chunks] == [2000, 2000, 500]

    def test_exact_limit(self):
        """Text exactly at the limit is not split."""
        assert split_message("x" * 2000, 2000) == ["x" * 2000]

    def test_invalid_limit(self):
        """Limit must be positive."""
        with pytest.raises(ValueError):
            split_message("text", 0)


class TestLoggingSender:
    """Tests for LoggingSender."""

    @pytest.mark.trio
    async def test_send_records_message(self):
        """Sent messages are recorded with a reference."""
        sender = LoggingSender()
        ref = await sender.send("111", "payout")

        assert sender.sent == [("111", ref, "payout")]

    @pytest.mark.trio
    async def test_send_splits_long_text(self):
        """Long text is posted in chunks; the first reference is returned."""
        sender = LoggingSender()
        ref = await sender.send("111", "a" * 1999 + "\n" + "b" * 10)

        assert len(sender.sent) == 2
        assert sender.sent[0][1] == ref
        assert sender.sent[1][2] == "b" * 10

    @pytest.mark.trio
    async def test_empty_text_rejected(self):
        """Empty messages raise DeliveryFailure."""
        with pytest.raises(DeliveryFailure):
            await LoggingSender().send("111", "  \n")

    @pytest.mark.trio
    async def test_edit_keeps_reference(self):
        """Edits target the original message."""
        sender = LoggingSender()
        ref = await sender.send("111", "first")
        assert await sender.edit("111", ref, "second") == ref
        assert sender.sent[-1] == ("111", ref, "second")


class TestDiscordSender:
    """Tests for DiscordSender."""

    def make_sender(self, status_code=200, body=None):
        session = Mock()
        response = Mock(status_code=status_code, text="error")
        response.json.return_value = body if body is not None else {"id": "42"}
        session.request.return_value = response
        return DiscordSender("token", session=session), session

    @pytest.mark.trio
    async def test_send_posts_to_channel(self):
        """Messages are POSTed to the channel with the bot token."""
        sender, session = self.make_sender()

        assert await sender.send("111", "payout") == "42"
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://discord.com/api/v10/channels/111/messages")
        assert kwargs["json"] == {"content": "payout"}
        assert kwargs["headers"]["Authorization"] == "Bot token"

    @pytest.mark.trio
    async def test_edit_patches_message(self):
        """Edits PATCH the original message."""
        sender, session = self.make_sender()

        await sender.edit("111", "42", "corrected")
        args, _ = session.request.call_args
        assert args == ("PATCH", "https://discord.com/api/v10/channels/111/messages/42")

    @pytest.mark.trio
    async def test_error_status(self):
        """Error statuses raise DeliveryFailure."""
        sender, _ = self.make_sender(status_code=403)

        with pytest.raises(DeliveryFailure, match="403"):
            await sender.send("111", "payout")

    @pytest.mark.trio
    async def test_transport_error(self):
        """Transport errors raise DeliveryFailure."""
        sender, session = self.make_sender()
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(DeliveryFailure, match="refused"):
            await sender.send("111", "payout")

    @pytest.mark.trio
    async def test_missing_id(self):
        """Responses without a message id raise DeliveryFailure."""
        sender, _ = self.make_sender(body={})

        with pytest.raises(DeliveryFailure):
            await sender.send("111", "payout")
