"""
Telegram update handlers

- 文本消息 -> DualAgentCoordinator.handle_inbound_message
- 分段按钮回调（seg_save_ / seg_copy_ / seg_expand_）
"""
from typing import Optional

from loguru import logger
from telegram import Update
from telegram.ext import (
    Application, CallbackQueryHandler, ContextTypes, MessageHandler, filters
)

from src.agents.coordinator import DualAgentCoordinator
from src.agents.models import InboundMessage
from src.services.history_store import HistoryStore, notes_key
from src.services.segment_service import SegmentCache, parse_segment_callback


GROUP_CHAT_TYPES = ("group", "supergroup")
SEGMENT_EXPIRED_NOTICE = "⏰ 这段内容已过期（30分钟），请重新提问"


class CompanionHandlers:
    """
    主Bot的消息与回调处理器

    Args:
        coordinator: 双Agent协调器
        segment_cache: 分段缓存
        history_store: 持久化存储（保存笔记），可为空
    """

    def __init__(
        self,
        coordinator: DualAgentCoordinator,
        segment_cache: SegmentCache,
        history_store: Optional[HistoryStore] = None
    ):
        self.coordinator = coordinator
        self.segment_cache = segment_cache
        self.history_store = history_store

    def register(self, app: Application) -> None:
        """注册到 Telegram Application"""
        app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self.handle_message))
        app.add_handler(CallbackQueryHandler(self.handle_segment_callback, pattern=r"^seg_"))
        app.add_error_handler(self.error_handler)

    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """处理文本消息"""
        message = update.message
        if not message or not message.text:
            return

        user = update.effective_user
        # 另一个 Agent 的消息不作为用户输入
        if user is not None and user.is_bot:
            return

        chat = message.chat
        logger.info(f"📨 Message from chat {chat.id} ({chat.type}): {message.text[:50]}")

        await self.coordinator.primary_transport.send_typing(chat.id)
        await self.coordinator.handle_inbound_message(InboundMessage(
            chat_id=str(chat.id),
            text=message.text,
            user_id=str(user.id) if user else None,
            user_name=user.first_name if user else None,
            message_id=message.message_id,
            is_group=chat.type in GROUP_CHAT_TYPES
        ))

    async def handle_segment_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """处理分段按钮：保存 / 复制 / 展开"""
        query = update.callback_query
        action, segment_id = parse_segment_callback(query.data)
        if action is None:
            await query.answer()
            return

        entry = self.segment_cache.get_entry(segment_id)
        if entry is None:
            await query.answer(SEGMENT_EXPIRED_NOTICE, show_alert=True)
            return

        chat_id = query.message.chat.id if query.message else entry.owner_chat_id
        transport = self.coordinator.primary_transport

        if action == "save":
            if self.history_store is None:
                await query.answer("❌ 存储不可用")
                return
            self.history_store.append_history(
                notes_key(query.from_user.id),
                entry.content,
                {"role": "user", "source": "segment", "chat_id": str(chat_id)}
            )
            logger.info(f"💾 Segment {segment_id} saved for user {query.from_user.id}")
            await query.answer("💾 已保存到笔记")

        elif action == "copy":
            await query.answer("📋 已发送纯文本，长按即可复制")
            await transport.send_message(chat_id, entry.content)

        elif action == "expand":
            await query.answer("🔍 展开中...")
            reply = await self.coordinator.primary.expand_segment(str(chat_id), entry.content)
            await self.coordinator.send_reply(str(chat_id), reply, None)

    async def error_handler(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        """记录未处理的异常（不向会话发送堆栈）"""
        logger.error(f"Update {update} caused error: {context.error}", exc_info=context.error)
