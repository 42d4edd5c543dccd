"""
Telegram Transport - 消息发送

对外提供：
- send_message(chat_id, text, ...) -> message_id | None
- edit_message(chat_id, message_id, text) -> bool

回复的目标消息已被删除时，改为发送一条普通消息而不是抛出异常。
"""
from typing import Optional

from loguru import logger
from telegram import Bot, InlineKeyboardMarkup, ReplyParameters
from telegram.constants import ChatAction
from telegram.error import BadRequest, TelegramError


REPLY_NOT_FOUND_MARKERS = ("replied not found", "message to reply not found")
EDIT_NOT_FOUND_MARKERS = ("message to edit not found", "message_id_invalid")
NOT_MODIFIED_MARKER = "message is not modified"
PARSE_ERROR_MARKER = "can't parse entities"


def _matches(error: Exception, markers) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in markers)


class TelegramTransport:
    """
    一个 Telegram Bot 的发送通道

    Args:
        bot: telegram.Bot 实例
        name: 通道名称（用于日志）
    """

    def __init__(self, bot: Bot, name: str = "bot"):
        self.bot = bot
        self.name = name

    async def send_message(
        self,
        chat_id,
        text: str,
        reply_to_message_id: Optional[int] = None,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
        parse_mode: Optional[str] = None
    ) -> Optional[int]:
        """
        发送消息

        Returns:
            发送成功返回 message_id，失败返回 None
        """
        try:
            sent = await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                reply_parameters=(
                    ReplyParameters(message_id=reply_to_message_id)
                    if reply_to_message_id is not None else None
                ),
                reply_markup=reply_markup,
                parse_mode=parse_mode
            )
            return sent.message_id

        except BadRequest as e:
            if reply_to_message_id is not None and _matches(e, REPLY_NOT_FOUND_MARKERS):
                logger.info(f"📤 [{self.name}] reply target {reply_to_message_id} gone, sending as new message")
                return await self.send_message(chat_id, text, reply_markup=reply_markup, parse_mode=parse_mode)
            if parse_mode is not None and _matches(e, (PARSE_ERROR_MARKER,)):
                logger.warning(f"📤 [{self.name}] {parse_mode} rejected, resending as plain text")
                return await self.send_message(
                    chat_id, text, reply_to_message_id=reply_to_message_id, reply_markup=reply_markup
                )
            logger.error(f"❌ [{self.name}] send_message rejected in chat {chat_id}: {e}")
            return None

        except TelegramError as e:
            logger.error(f"❌ [{self.name}] send_message failed in chat {chat_id}: {e}")
            return None

    async def edit_message(
        self,
        chat_id,
        message_id: int,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None
    ) -> bool:
        """
        编辑消息

        Returns:
            成功（或内容未变化）返回 True，消息不存在或失败返回 False
        """
        try:
            await self.bot.edit_message_text(
                text=text,
                chat_id=chat_id,
                message_id=message_id,
                reply_markup=reply_markup
            )
            return True

        except BadRequest as e:
            if _matches(e, (NOT_MODIFIED_MARKER,)):
                return True
            if _matches(e, EDIT_NOT_FOUND_MARKERS):
                logger.info(f"✏️ [{self.name}] message {message_id} in chat {chat_id} no longer exists")
            else:
                logger.error(f"❌ [{self.name}] edit_message rejected in chat {chat_id}: {e}")
            return False

        except TelegramError as e:
            logger.error(f"❌ [{self.name}] edit_message failed in chat {chat_id}: {e}")
            return False

    async def send_typing(self, chat_id) -> None:
        try:
            await self.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
        except TelegramError as e:
            logger.debug(f"[{self.name}] send_chat_action failed in chat {chat_id}: {e}")
