"""
Telegram 发送通道测试
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import BadRequest, NetworkError

from src.bot.transport import TelegramTransport


def make_bot(*side_effect):
    bot = MagicMock()
    bot.send_message = AsyncMock(side_effect=list(side_effect))
    bot.edit_message_text = AsyncMock()
    bot.send_chat_action = AsyncMock()
    return bot


def sent(message_id):
    message = MagicMock()
    message.message_id = message_id
    return message


class TestSendMessage:

    @pytest.mark.asyncio
    async def test_send_returns_message_id(self):
        bot = make_bot(sent(7))
        transport = TelegramTransport(bot, name="BongBong")

        assert await transport.send_message(-100, "你好", reply_to_message_id=5) == 7
        kwargs = bot.send_message.call_args.kwargs
        assert kwargs["reply_parameters"].message_id == 5

    @pytest.mark.asyncio
    async def test_deleted_reply_target_sends_plain_message(self):
        bot = make_bot(BadRequest("Message to be replied not found"), sent(8))
        transport = TelegramTransport(bot)

        assert await transport.send_message(-100, "你好", reply_to_message_id=5) == 8
        assert bot.send_message.await_count == 2
        assert bot.send_message.call_args.kwargs["reply_parameters"] is None

    @pytest.mark.asyncio
    async def test_parse_error_resends_without_parse_mode(self):
        bot = make_bot(BadRequest("Can't parse entities: unexpected end"), sent(9))
        transport = TelegramTransport(bot)

        assert await transport.send_message(-100, "*坏", parse_mode="Markdown") == 9
        assert bot.send_message.call_args.kwargs["parse_mode"] is None

    @pytest.mark.asyncio
    async def test_other_errors_return_none(self):
        transport = TelegramTransport(make_bot(BadRequest("Chat not found")))
        assert await transport.send_message(-100, "你好") is None

        transport = TelegramTransport(make_bot(NetworkError("timeout")))
        assert await transport.send_message(-100, "你好") is None


class TestEditMessage:

    @pytest.mark.asyncio
    async def test_edit_success(self):
        transport = TelegramTransport(make_bot())
        assert await transport.edit_message(-100, 1, "新内容")

    @pytest.mark.asyncio
    async def test_not_modified_counts_as_success(self):
        bot = make_bot()
        bot.edit_message_text.side_effect = BadRequest("Message is not modified")
        assert await TelegramTransport(bot).edit_message(-100, 1, "同样的内容")

    @pytest.mark.asyncio
    async def test_missing_message(self):
        bot = make_bot()
        bot.edit_message_text.side_effect = BadRequest("Message to edit not found")
        assert not await TelegramTransport(bot).edit_message(-100, 1, "新内容")
