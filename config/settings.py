"""
Configuration settings for the dual-agent companion bot
"""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Telegram Configuration
    primary_bot_token: Optional[str] = None  # 主Agent（BongBong）
    shadow_bot_token: Optional[str] = None  # 影子Agent（虚拟分身）
    primary_bot_username: str = "bongbong_bot"
    shadow_bot_username: str = "avatar_bot"

    # AI Provider Configuration（均为 OpenAI 兼容接口）
    gemini_api_key: Optional[str] = None
    gemini_api_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    grok_api_key: Optional[str] = None
    grok_api_url: str = "https://api.x.ai/v1"
    generation_timeout_seconds: float = 60.0  # 单次生成调用超时
    generation_max_retries: int = 1  # 单个模型的重试次数（之后走回退链）

    # Storage Configuration
    redis_url: Optional[str] = None
    history_store_ttl: int = 86400 * 7  # 外部历史记录过期时间（秒）

    # Application Configuration
    log_level: str = "INFO"

    # Router Configuration
    routing_config_path: Optional[str] = None  # 为空时使用 config/routing.yaml
    usage_ceiling: int = 100  # 计数达到上限时减半
    secondary_target_ratio: float = 0.25  # 目标: 主Provider 75% / 次Provider 25%

    # Session Configuration
    history_max_turns: int = 20  # 每个用户/群组保留的最大对话轮数
    stale_group_days: int = 30  # 超过该天数不活跃的群组会被清理
    sweep_interval_minutes: int = 60  # 清理任务的执行间隔

    # Segment Cache Configuration
    segment_ttl_seconds: int = 30 * 60  # 分段缓存 30 分钟过期
    segment_min_length: int = 200  # 短于该长度不分段
    segment_max_chunk: int = 800  # 按段落切分时的最大块长度
    segment_split_threshold: int = 1000  # 无结构标记且超过该长度时按段落切分

    # Idle Chat Configuration（群聊空闲触发）
    idle_chat_enabled: bool = True
    idle_min_minutes: float = 30  # 空闲计时器最短时间
    idle_max_minutes: float = 60  # 空闲计时器最长时间
    idle_cooldown_minutes: float = 60  # 两次闲聊之间的最小间隔
    idle_burst_turns: int = 10  # 每次触发的发言次数
    idle_turn_interval_seconds: float = 3.0  # 每句之间的间隔
    idle_react_every: int = 3  # 每 k 句让影子Agent接一次话

    # Dual-Agent Interaction Configuration
    interjection_delay_seconds: float = 2.0  # 主Agent回复后影子Agent接话的延迟
    counter_reply_delay_seconds: float = 2.0  # 主Agent反击回复的延迟
    counter_reply_rate: float = 0.15  # 主Agent反击影子Agent的概率
    shadow_reply_rate: float = 0.7  # 影子Agent接话的概率

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
