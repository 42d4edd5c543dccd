"""
Routing Catalog - 路由静态配置

从 config/routing.yaml 加载：
- 模型目录（provider.type -> ModelInfo）
- 语义类别注册表（关键词、正则、权重）
- 类别规则、排除模型列表、回退链
"""
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Tuple

import yaml
from loguru import logger

from .models import CategoryRule, ModelInfo


_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "routing.yaml"

DEFAULT_CATEGORY = "casual"
DEFAULT_CHAIN_KEY = "default"

# 配置文件缺失时的最小可用配置
_MINIMAL_CONFIG: Dict[str, Any] = {
    "providers": {"primary": "gemini", "secondary": "grok"},
    "defaults": {
        "cheap_model": "gemini.flash",
        "high_capability_model": "gemini.flash",
        "secondary_model": "gemini.flash",
        "complexity_threshold": 3,
    },
    "models": {
        "gemini": {
            "flash": {"id": "gemini-2.5-flash", "name": "Gemini 2.5 Flash", "icon": "⚡"},
        },
    },
    "fallback_chains": {DEFAULT_CHAIN_KEY: ["gemini-2.5-flash"]},
}


@dataclass(frozen=True)
class CategoryDefinition:
    """语义类别：关键词与正则各自累加权重"""
    name: str
    weight: float
    keywords: Tuple[str, ...] = ()
    patterns: Tuple[Pattern, ...] = ()


@dataclass(frozen=True)
class ComplexityConfig:
    """复杂度计算参数"""
    length_steps: Tuple[int, ...] = (100, 300)
    high_score_threshold: float = 2
    high_score_increment: float = 0.5
    max: float = 5
    category_bonus: Tuple[Tuple[str, float, float], ...] = ()  # (category, min_score, bonus)


@dataclass
class RoutingCatalog:
    """
    路由目录

    Attributes:
        primary_provider: 主Provider（默认便宜模型所在）
        secondary_provider: 次Provider（比例平衡时使用）
        models: provider.type -> ModelInfo
        categories: 按注册顺序排列的类别定义
        rules: 按顺序匹配的类别规则
        excluded_models: 绝对不使用的模型ID
        fallback_chains: 模型ID -> 回退模型ID列表
    """
    primary_provider: str
    secondary_provider: str
    cheap_model: str
    high_capability_model: str
    secondary_model: str
    complexity_threshold: float
    models: Dict[str, ModelInfo] = field(default_factory=dict)
    categories: List[CategoryDefinition] = field(default_factory=list)
    rules: List[CategoryRule] = field(default_factory=list)
    excluded_models: frozenset = frozenset()
    fallback_chains: Dict[str, List[str]] = field(default_factory=dict)
    complexity: ComplexityConfig = field(default_factory=ComplexityConfig)

    def __post_init__(self):
        self._by_id: Dict[str, ModelInfo] = {info.id: info for info in self.models.values()}
        if self.cheap_model in self.excluded_models:
            raise ValueError(f"cheap_model ({self.cheap_model}) 不能出现在 excluded_models 中")

    def get_model(self, key_or_id: str) -> Optional[ModelInfo]:
        """按 provider.type 或模型ID查找模型"""
        return self.models.get(key_or_id) or self._by_id.get(key_or_id)

    def provider_of(self, model_id: str) -> str:
        """模型所属的Provider；未登记的模型按ID前缀推断"""
        info = self.get_model(model_id)
        if info:
            return info.provider
        return model_id.split("-", 1)[0]

    def is_excluded(self, model_id: str) -> bool:
        return model_id in self.excluded_models

    def get_fallback_models(self, model_id: str) -> List[str]:
        """模型的回退链；没有专门条目时使用默认链"""
        return list(
            self.fallback_chains.get(model_id)
            or self.fallback_chains.get(DEFAULT_CHAIN_KEY, [])
        )

    @property
    def category_names(self) -> List[str]:
        return [category.name for category in self.categories]


def _parse_models(data: Dict[str, Any]) -> Dict[str, ModelInfo]:
    models: Dict[str, ModelInfo] = {}
    for provider, entries in (data or {}).items():
        for model_type, entry in (entries or {}).items():
            key = f"{provider}.{model_type}"
            models[key] = ModelInfo(
                key=key,
                id=entry["id"],
                name=entry.get("name", entry["id"]),
                provider=provider,
                icon=entry.get("icon", ""),
                description=entry.get("description", ""),
            )
    return models


def _parse_categories(data: Dict[str, Any]) -> List[CategoryDefinition]:
    categories = []
    for name, entry in (data or {}).items():
        patterns = []
        for raw in entry.get("patterns", []):
            try:
                patterns.append(re.compile(raw))
            except re.error as e:
                logger.warning(f"⚠️ 类别 {name} 的正则无效，已跳过: {raw} ({e})")
        categories.append(CategoryDefinition(
            name=name,
            weight=float(entry.get("weight", 1)),
            keywords=tuple(kw.lower() for kw in entry.get("keywords", [])),
            patterns=tuple(patterns),
        ))
    return categories


def _parse_complexity(data: Dict[str, Any]) -> ComplexityConfig:
    if not data:
        return ComplexityConfig()
    return ComplexityConfig(
        length_steps=tuple(data.get("length_steps", (100, 300))),
        high_score_threshold=data.get("high_score_threshold", 2),
        high_score_increment=data.get("high_score_increment", 0.5),
        max=data.get("max", 5),
        category_bonus=tuple(
            (item["category"], item["min_score"], item["bonus"])
            for item in data.get("category_bonus", [])
        ),
    )


def build_catalog(config: Dict[str, Any]) -> RoutingCatalog:
    """从配置字典构建路由目录"""
    providers = config.get("providers", {})
    defaults = config.get("defaults", {})
    models = _parse_models(config.get("models", {}))

    def resolve(key: str) -> str:
        # 允许 provider.type 或直接写模型ID
        info = models.get(key)
        return info.id if info else key

    return RoutingCatalog(
        primary_provider=providers.get("primary", "gemini"),
        secondary_provider=providers.get("secondary", "grok"),
        cheap_model=resolve(defaults.get("cheap_model", "gemini.flash")),
        high_capability_model=resolve(defaults.get("high_capability_model", "gemini.pro")),
        secondary_model=resolve(defaults.get("secondary_model", "grok.mini")),
        complexity_threshold=defaults.get("complexity_threshold", 3),
        models=models,
        categories=_parse_categories(config.get("categories", {})),
        rules=[
            CategoryRule(
                category=rule["category"],
                min_score=rule.get("min_score", 0),
                model=resolve(rule["model"]),
                reason=rule["reason"],
            )
            for rule in config.get("category_rules", [])
        ],
        excluded_models=frozenset(config.get("excluded_models", [])),
        fallback_chains={
            model_id: list(chain)
            for model_id, chain in config.get("fallback_chains", {}).items()
        },
        complexity=_parse_complexity(config.get("complexity", {})),
    )


def load_routing_catalog(path: Optional[str] = None) -> RoutingCatalog:
    """
    加载路由目录

    Args:
        path: YAML 文件路径，为空则使用 config/routing.yaml

    Returns:
        RoutingCatalog: 配置加载失败时返回最小可用目录
    """
    config_path = Path(path) if path else _CONFIG_PATH
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except (FileNotFoundError, yaml.YAMLError) as e:
        logger.error(f"❌ 路由配置加载失败: {e}，使用最小默认配置")
        config = _MINIMAL_CONFIG

    catalog = build_catalog(config)
    logger.info(
        f"🧭 [ROUTER] 路由目录已加载: {len(catalog.models)} 个模型, "
        f"{len(catalog.categories)} 个类别, {len(catalog.rules)} 条规则"
    )
    return catalog
