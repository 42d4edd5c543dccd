"""
Routing Module - 语义路由

提供：
- 语义分类器（关键词/正则加权打分）
- 智能模型路由器（复杂度、类别规则、比例平衡、排除列表）
- 路由目录（模型、回退链）
"""

from .models import ClassificationResult, RoutingDecision, UsageCounter, ModelInfo, CategoryRule
from .catalog import RoutingCatalog, CategoryDefinition, load_routing_catalog, build_catalog
from .classifier import SemanticClassifier
from .router import SmartRouter, REASON_OVERRIDE, REASON_DEEP_ANALYSIS, REASON_DEFAULT

__all__ = [
    'ClassificationResult',
    'RoutingDecision',
    'UsageCounter',
    'ModelInfo',
    'CategoryRule',
    'RoutingCatalog',
    'CategoryDefinition',
    'load_routing_catalog',
    'build_catalog',
    'SemanticClassifier',
    'SmartRouter',
    'REASON_OVERRIDE',
    'REASON_DEEP_ANALYSIS',
    'REASON_DEFAULT',
]
