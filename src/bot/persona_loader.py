"""
Persona Loader - Agent人设配置加载器

从 bots/<bot_id>/config.yaml 加载 Agent 的人设：系统提示词、
各场景提示词模板、回复模板、空闲闲聊任务类型与开场白。
"""
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from pathlib import Path
import yaml
from loguru import logger


@dataclass
class AIConfig:
    """AI模型配置"""
    model: Optional[str] = None  # 为空时由路由器选择
    temperature: float = 0.8
    max_tokens: int = 1000
    counter_model: str = "gemini.flash"
    idle_model: str = "gemini.lite"
    idle_temperature: float = 1.2
    idle_max_tokens: int = 50


@dataclass
class IdleTaskType:
    """空闲闲聊任务类型"""
    type: str
    weight: float
    name: str = ""
    prompt: str = ""


DEFAULT_TASK_TYPES = [
    IdleTaskType("summary", 30, "总结对话"),
    IdleTaskType("analysis", 25, "分析讨论"),
    IdleTaskType("prediction", 20, "推演预测"),
    IdleTaskType("random_chat", 25, "随机闲聊"),
]


@dataclass
class IdleChatConfig:
    """空闲闲聊配置"""
    task_types: List[IdleTaskType] = field(default_factory=lambda: list(DEFAULT_TASK_TYPES))
    openers: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class PersonaConfig:
    """
    Agent人设配置

    从YAML配置文件加载的人设对象
    """
    name: str
    username: str = ""
    role: str = "primary"
    description: str = ""
    system_prompt: str = ""

    ai: AIConfig = field(default_factory=AIConfig)
    prompts: Dict[str, str] = field(default_factory=dict)
    templates: Dict[str, List[str]] = field(default_factory=dict)
    idle_chat: IdleChatConfig = field(default_factory=IdleChatConfig)

    config_path: Optional[Path] = None

    def get_system_prompt(self) -> str:
        """获取系统提示词"""
        if self.system_prompt:
            return self.system_prompt
        return f"你是一个名叫{self.name}的群聊伙伴。{self.description}"

    def render_prompt(self, key: str, **variables: Any) -> Optional[str]:
        """渲染提示词模板，模板不存在时返回 None"""
        template = self.prompts.get(key)
        if not template:
            return None
        try:
            return template.format(**variables)
        except (KeyError, IndexError) as e:
            logger.warning(f"Prompt template {self.name}.{key} missing variable: {e}")
            return template

    def get_templates(self, key: str) -> List[str]:
        return self.templates.get(key, [])

    def get_openers(self, task_type: str) -> List[str]:
        openers = self.idle_chat.openers
        return openers.get(task_type) or openers.get("random_chat", [])


class PersonaLoader:
    """
    人设配置加载器

    从YAML文件加载 Agent 人设
    """

    def __init__(self, bots_dir: str = "bots"):
        """
        初始化加载器

        Args:
            bots_dir: Bots目录路径
        """
        self.bots_dir = Path(bots_dir)
        self._personas: Dict[str, PersonaConfig] = {}

        logger.info(f"PersonaLoader initialized with bots_dir: {self.bots_dir}")

    def _parse_ai_config(self, data: Dict) -> AIConfig:
        """解析AI配置"""
        defaults = AIConfig()
        return AIConfig(
            model=data.get("model"),
            temperature=data.get("temperature", defaults.temperature),
            max_tokens=data.get("max_tokens", defaults.max_tokens),
            counter_model=data.get("counter_model", defaults.counter_model),
            idle_model=data.get("idle_model", defaults.idle_model),
            idle_temperature=data.get("idle_temperature", defaults.idle_temperature),
            idle_max_tokens=data.get("idle_max_tokens", defaults.idle_max_tokens)
        )

    def _parse_idle_chat_config(self, data: Dict) -> IdleChatConfig:
        """解析空闲闲聊配置"""
        task_types = [
            IdleTaskType(
                type=item["type"],
                weight=float(item.get("weight", 1)),
                name=item.get("name", item["type"]),
                prompt=item.get("prompt", "")
            )
            for item in data.get("task_types", [])
            if item.get("type") and float(item.get("weight", 1)) > 0
        ]
        return IdleChatConfig(
            task_types=task_types or list(DEFAULT_TASK_TYPES),
            openers={key: list(values) for key, values in (data.get("openers") or {}).items()}
        )

    def parse(self, data: Dict, bot_id: str, config_path: Optional[Path] = None) -> PersonaConfig:
        """把YAML字典解析为 PersonaConfig"""
        bot_data = data.get("bot", {})
        prompt_data = data.get("prompt", {})
        return PersonaConfig(
            name=bot_data.get("name", bot_id),
            username=bot_data.get("username", ""),
            role=bot_data.get("role", "primary"),
            description=bot_data.get("description", ""),
            system_prompt=prompt_data.get("system", ""),
            ai=self._parse_ai_config(data.get("ai", {})),
            prompts={key: value for key, value in prompt_data.items() if key != "system"},
            templates={key: list(values) for key, values in (data.get("templates") or {}).items()},
            idle_chat=self._parse_idle_chat_config(data.get("idle_chat", {})),
            config_path=config_path
        )

    def load_persona(self, bot_id: str) -> Optional[PersonaConfig]:
        """
        加载指定Agent的人设

        Args:
            bot_id: Bot标识（目录名）

        Returns:
            PersonaConfig对象或None
        """
        config_path = self.bots_dir / bot_id / "config.yaml"

        if not config_path.exists():
            logger.warning(f"Persona file not found: {config_path}")
            return None

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Error loading persona for {bot_id}: {e}")
            return None

        persona = self.parse(data, bot_id, config_path)
        self._personas[bot_id] = persona
        logger.info(f"Loaded persona: {bot_id} ({persona.name}, role={persona.role})")
        return persona

    def get_persona(self, bot_id: str) -> Optional[PersonaConfig]:
        """获取已加载的人设"""
        if bot_id not in self._personas:
            self.load_persona(bot_id)
        return self._personas.get(bot_id)

    def list_personas(self) -> List[str]:
        """列出所有可用的人设"""
        if not self.bots_dir.exists():
            return []

        return sorted(
            bot_dir.name for bot_dir in self.bots_dir.iterdir()
            if bot_dir.is_dir() and not bot_dir.name.startswith('_')
            and (bot_dir / "config.yaml").exists()
        )
