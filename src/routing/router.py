"""
智能模型路由器

根据分类结果选择 (provider, model)：
1. 用户指定模型 -> 直接使用
2. 高复杂度 -> 主Provider的高能力模型
3. 类别规则（按顺序，先匹配先生效）
4. 比例平衡（默认 75% 主Provider / 25% 次Provider）

排除列表中的模型绝不会被返回，命中时替换为回退链中第一个可用模型。
路由器本身不调用外部服务，不会失败。
"""
import random
from typing import Dict, Optional

from loguru import logger

from .catalog import RoutingCatalog
from .classifier import SemanticClassifier
from .models import ClassificationResult, RoutingDecision, UsageCounter


REASON_OVERRIDE = "user override"
REASON_DEEP_ANALYSIS = "deep analysis"
REASON_DEFAULT = "default"
REASON_FALLBACK_SUFFIX = "fallback"


class SmartRouter:
    """
    智能模型路由器

    Usage:
        catalog = load_routing_catalog()
        router = SmartRouter(catalog)
        decision = router.route("帮我分析一下这两个选择的利弊")
    """

    def __init__(
        self,
        catalog: RoutingCatalog,
        classifier: Optional[SemanticClassifier] = None,
        usage_counter: Optional[UsageCounter] = None,
        target_secondary_ratio: float = 0.25,
        rng: Optional[random.Random] = None,
    ):
        """
        初始化路由器

        Args:
            catalog: 路由目录
            classifier: 语义分类器（为空时按目录构建）
            usage_counter: 使用计数器（为空时新建）
            target_secondary_ratio: 次Provider的目标占比
            rng: 随机数源（测试时可注入确定序列）
        """
        if not 0.0 <= target_secondary_ratio <= 1.0:
            raise ValueError(
                f"target_secondary_ratio必须在0.0-1.0之间，当前值: {target_secondary_ratio}"
            )

        self.catalog = catalog
        self.classifier = classifier or SemanticClassifier(catalog.categories, catalog.complexity)
        self.usage_counter = usage_counter or UsageCounter()
        self.target_secondary_ratio = target_secondary_ratio
        self._rng = rng or random.Random()

    def classify(self, text: Optional[str]) -> ClassificationResult:
        return self.classifier.classify(text)

    def route(self, text: Optional[str], override_model: Optional[str] = None) -> RoutingDecision:
        """分类并选择模型"""
        return self.select_model(self.classify(text), override_model=override_model)

    def select_model(
        self,
        classification: ClassificationResult,
        usage_counter: Optional[UsageCounter] = None,
        override_model: Optional[str] = None,
    ) -> RoutingDecision:
        """
        选择模型并更新使用计数

        Args:
            classification: 分类结果
            usage_counter: 使用计数器（为空时使用路由器自己的计数器）
            override_model: 用户指定的模型ID或 provider.type

        Returns:
            RoutingDecision: 路由决策
        """
        counter = usage_counter or self.usage_counter

        if override_model:
            model_id, reason = self._resolve_id(override_model), REASON_OVERRIDE
        elif classification.complexity >= self.catalog.complexity_threshold:
            model_id, reason = self.catalog.high_capability_model, REASON_DEEP_ANALYSIS
        else:
            model_id, reason = self._match_rule(classification)
            if model_id is None:
                model_id, reason = self._select_by_ratio(counter), REASON_DEFAULT

        if self.catalog.is_excluded(model_id):
            substitute = self.substitute_for(model_id)
            logger.warning(
                f"🧭 [ROUTER] 模型 {model_id} 在排除列表中，替换为 {substitute}"
            )
            model_id, reason = substitute, f"{reason} ({REASON_FALLBACK_SUFFIX})"

        decision = self._build_decision(model_id, reason, classification)
        counter.record(decision.provider)

        logger.info(
            f"🧭 [ROUTER] category={classification.category} | "
            f"score={classification.score:.1f} | complexity={classification.complexity:.1f} | "
            f"model={decision.model_id} | reason={decision.reason}"
        )
        return decision

    def _resolve_id(self, key_or_id: str) -> str:
        info = self.catalog.get_model(key_or_id)
        return info.id if info else key_or_id

    def _match_rule(self, classification: ClassificationResult):
        """按顺序匹配类别规则，只对最高分类别生效"""
        for rule in self.catalog.rules:
            if classification.category != rule.category:
                continue
            if rule.min_score > 0 and classification.score <= rule.min_score:
                continue
            return rule.model, rule.reason
        return None, None

    def _select_by_ratio(self, counter: UsageCounter) -> str:
        """
        按目标比例在主/次Provider之间选择

        次Provider占比低于目标时，以目标占比为概率选择次Provider，
        否则使用主Provider的便宜模型。
        """
        if counter.total == 0:
            return self.catalog.cheap_model

        secondary_ratio = counter.ratio(self.catalog.secondary_provider)
        if secondary_ratio < self.target_secondary_ratio:
            if self._rng.random() < self.target_secondary_ratio:
                return self.catalog.secondary_model
        return self.catalog.cheap_model

    def substitute_for(self, model_id: str) -> str:
        """回退链中第一个未被排除的模型"""
        for candidate in self.catalog.get_fallback_models(model_id):
            if not self.catalog.is_excluded(candidate):
                return candidate
        return self.catalog.cheap_model

    def _build_decision(
        self,
        model_id: str,
        reason: str,
        classification: ClassificationResult,
    ) -> RoutingDecision:
        info = self.catalog.get_model(model_id)
        return RoutingDecision(
            provider=info.provider if info else self.catalog.provider_of(model_id),
            model_id=model_id,
            model_name=info.name if info else model_id,
            reason=reason,
            icon=info.icon if info else "",
            category=classification.category,
            complexity=classification.complexity,
        )

    def get_stats(self) -> Dict:
        """获取使用统计"""
        return self.usage_counter.snapshot()
