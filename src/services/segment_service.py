"""
智能分段输出服务

功能：
- 将长文本按知识点切分（标题行、粗体标题行、Emoji 开头的行为分段边界）
- 无分段边界且过长时按段落切分
- 分段缓存：put/get，超过 TTL 的条目在读写时顺带清理
- 每段附带迷你按钮（保存/复制/展开）
- 单行仪表盘页脚
"""
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from loguru import logger
from telegram import InlineKeyboardButton, InlineKeyboardMarkup


DEFAULT_TITLE = "内容"
TITLE_MAX_LENGTH = 20

CALLBACK_SAVE = "seg_save_"
CALLBACK_COPY = "seg_copy_"
CALLBACK_EXPAND = "seg_expand_"

_HEADING = re.compile(r"^#{1,3}\s+")
_BOLD_TITLE = re.compile(r"^\*\*[^*]+\*\*$")
_LIST_MARKER = re.compile(r"^[-•]\s+")
_PARAGRAPH_BREAK = re.compile(r"\n\n+")
_SECTION_EMOJIS = (
    "📋", "🔍", "✅", "⚠", "💡", "📊", "🛂", "👴", "💎", "📅",
    "❓", "🆓", "📌", "🏥", "💊", "🍵", "🧘",
)


@dataclass
class Segment:
    """切分出的一个段落"""
    content: str
    title: str = DEFAULT_TITLE
    type: str = "section"  # single / section / chunk


@dataclass
class CachedSegment:
    """
    缓存中的段落

    Attributes:
        id: 段落ID（owner + 毫秒时间戳 + 随机后缀）
        content: 段落内容
        owner_chat_id: 所属会话
        created_at: 创建时间（clock 返回的秒数）
    """
    id: str
    content: str
    owner_chat_id: str
    created_at: float = field(default_factory=time.time)


def is_new_section(line: str) -> bool:
    """检测是否是新段落开始"""
    if not line or not line.strip():
        return False
    if _HEADING.match(line):
        return True
    if _BOLD_TITLE.match(line.strip()):
        return True
    return line.startswith(_SECTION_EMOJIS)


def extract_title(line: Optional[str]) -> str:
    """提取标题：去除 Markdown 标记，最多 20 个字符"""
    if not line:
        return DEFAULT_TITLE

    title = _HEADING.sub("", line)
    title = title.replace("**", "")
    title = _LIST_MARKER.sub("", title).strip()

    if len(title) > TITLE_MAX_LENGTH:
        title = title[:TITLE_MAX_LENGTH] + "..."
    return title or DEFAULT_TITLE


def split_by_length(text: str, max_length: int = 800) -> List[Segment]:
    """按段落切分，每块不超过 max_length（单个段落超长时独占一块）"""
    segments: List[Segment] = []
    current: List[str] = []
    current_length = 0

    for paragraph in _PARAGRAPH_BREAK.split(text):
        if current and current_length + len(paragraph) > max_length:
            segments.append(Segment(
                content="\n\n".join(current).strip(),
                title=extract_title(current[0]),
                type="chunk"
            ))
            current = []
            current_length = 0
        current.append(paragraph)
        current_length += len(paragraph)

    if current:
        segments.append(Segment(
            content="\n\n".join(current).strip(),
            title=extract_title(current[0]),
            type="chunk"
        ))

    return segments


def split_into_segments(
    text: Optional[str],
    min_length: int = 200,
    split_threshold: int = 1000,
    max_chunk: int = 800
) -> List[Segment]:
    """
    将长文本切分为知识点段落

    Args:
        text: 原始文本
        min_length: 短于此长度的文本不切分
        split_threshold: 没有分段边界时，超过此长度按段落切分
        max_chunk: 按段落切分时每块的最大长度

    Returns:
        段落列表
    """
    if not text or len(text) < min_length:
        return [Segment(content=text or "", type="single")]

    segments: List[Segment] = []
    current: List[str] = []
    current_title = ""

    for line in text.split("\n"):
        if is_new_section(line) and current:
            segments.append(Segment(
                content="\n".join(current).strip(),
                title=current_title or extract_title(current[0])
            ))
            current = []
            current_title = extract_title(line)
        current.append(line)

    if current:
        segments.append(Segment(
            content="\n".join(current).strip(),
            title=current_title or DEFAULT_TITLE
        ))

    if len(segments) == 1 and len(segments[0].content) > split_threshold:
        return split_by_length(segments[0].content, max_chunk)

    return segments


def build_segment_buttons(segment_id: str) -> InlineKeyboardMarkup:
    """构建迷你按钮：保存 / 复制 / 展开"""
    return InlineKeyboardMarkup([[
        InlineKeyboardButton("💾", callback_data=f"{CALLBACK_SAVE}{segment_id}"),
        InlineKeyboardButton("📋", callback_data=f"{CALLBACK_COPY}{segment_id}"),
        InlineKeyboardButton("🔍", callback_data=f"{CALLBACK_EXPAND}{segment_id}"),
    ]])


def parse_segment_callback(data: Optional[str]):
    """
    解析按钮回调数据

    Returns:
        (action, segment_id)，action 为 save/copy/expand；无法识别时返回 (None, None)
    """
    if not data:
        return None, None
    for prefix, action in (
        (CALLBACK_SAVE, "save"),
        (CALLBACK_COPY, "copy"),
        (CALLBACK_EXPAND, "expand"),
    ):
        if data.startswith(prefix):
            return action, data[len(prefix):]
    return None, None


def build_compact_dashboard(
    model: str,
    tokens: int,
    icon: str = "",
    at: Optional[datetime] = None
) -> str:
    """生成简洁的仪表盘（单行页脚）"""
    label = f"{icon} {model}" if icon else model
    stamp = (at or datetime.now()).strftime("%H:%M")
    return f"\n───\n📊 {label} | {tokens}t | {stamp}"


class SegmentCache:
    """
    分段缓存

    条目在 TTL（默认 30 分钟）后失效；没有后台清理任务，
    过期条目在 put/get 时被顺带删除。
    """

    def __init__(self, ttl_seconds: float = 1800, clock: Optional[Callable[[], float]] = None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time
        self._entries: Dict[str, CachedSegment] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _new_id(self, owner_chat_id: str) -> str:
        millis = int(self._clock() * 1000)
        suffix = uuid.uuid4().hex[:6]
        segment_id = f"{owner_chat_id}_{millis}_{suffix}"
        while segment_id in self._entries:
            segment_id = f"{owner_chat_id}_{millis}_{uuid.uuid4().hex[:6]}"
        return segment_id

    def _is_expired(self, entry: CachedSegment, now: float) -> bool:
        return now - entry.created_at > self.ttl_seconds

    def evict_expired(self) -> int:
        """删除所有过期条目，返回删除数量"""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"SegmentCache: evicted {len(expired)} expired segments")
        return len(expired)

    def put(self, content: str, owner_chat_id) -> str:
        """缓存一个段落，返回段落ID"""
        self.evict_expired()
        owner = str(owner_chat_id)
        segment_id = self._new_id(owner)
        self._entries[segment_id] = CachedSegment(
            id=segment_id,
            content=content,
            owner_chat_id=owner,
            created_at=self._clock()
        )
        return segment_id

    def get_entry(self, segment_id: str) -> Optional[CachedSegment]:
        """获取缓存条目，未知或过期时返回 None"""
        entry = self._entries.get(segment_id)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock()):
            del self._entries[segment_id]
            return None
        return entry

    def get(self, segment_id: str) -> Optional[str]:
        """获取段落内容，未知或过期时返回 None"""
        entry = self.get_entry(segment_id)
        return entry.content if entry else None


class SegmentService:
    """
    把长回复切分、缓存并生成带按钮的待发送消息

    Usage:
        service = SegmentService(SegmentCache())
        for text, markup in service.prepare(reply_text, chat_id):
            await transport.send_message(chat_id, text, reply_markup=markup)
    """

    def __init__(
        self,
        cache: SegmentCache,
        min_length: int = 200,
        split_threshold: int = 1000,
        max_chunk: int = 800
    ):
        self.cache = cache
        self.min_length = min_length
        self.split_threshold = split_threshold
        self.max_chunk = max_chunk

    def split(self, text: Optional[str]) -> List[Segment]:
        return split_into_segments(
            text,
            min_length=self.min_length,
            split_threshold=self.split_threshold,
            max_chunk=self.max_chunk
        )

    def prepare(self, text: str, chat_id) -> List[tuple]:
        """
        生成待发送的 (文本, 按钮) 列表

        短文本不缓存也不带按钮；长文本每段缓存一次并附带按钮。
        """
        segments = self.split(text)
        if len(segments) == 1 and segments[0].type == "single":
            return [(segments[0].content, None)]

        messages = []
        for segment in segments:
            if not segment.content:
                continue
            segment_id = self.cache.put(segment.content, chat_id)
            messages.append((segment.content, build_segment_buttons(segment_id)))
        return messages
