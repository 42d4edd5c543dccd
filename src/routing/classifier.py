"""
语义分类器

按加权关键词/正则为消息打分：
- 每命中一个关键词累加该类别的 weight
- 每命中一个正则累加 weight * 1.5
- 最高分类别为消息类别，同分时按注册顺序先注册者胜出
- 根据长度和高分类别数量计算复杂度（0-5）
"""
import re
from typing import Dict, List, Optional

from .catalog import DEFAULT_CATEGORY, CategoryDefinition, ComplexityConfig
from .models import ClassificationResult


PATTERN_MULTIPLIER = 1.5
_QUESTION_MARKS = re.compile(r"[?？]")


class SemanticClassifier:
    """
    语义分类器

    不持有任何可变状态，同一文本多次分类结果相同。

    Usage:
        classifier = SemanticClassifier(catalog.categories, catalog.complexity)
        result = classifier.classify("为什么他会这么说？")
    """

    def __init__(
        self,
        categories: List[CategoryDefinition],
        complexity: Optional[ComplexityConfig] = None,
        default_category: str = DEFAULT_CATEGORY,
    ):
        self._categories = tuple(categories)
        self._complexity = complexity or ComplexityConfig()
        self.default_category = default_category

    @property
    def category_names(self) -> List[str]:
        return [category.name for category in self._categories]

    def classify(self, text: Optional[str]) -> ClassificationResult:
        """
        对消息进行分类

        Args:
            text: 消息文本（可为空）

        Returns:
            ClassificationResult: 空文本返回全零分数和默认类别
        """
        if not text:
            return ClassificationResult(
                category=self.default_category,
                scores={category.name: 0.0 for category in self._categories},
            )

        scores = self.score(text)
        category = self._top_category(scores)
        question_count = len(_QUESTION_MARKS.findall(text))

        return ClassificationResult(
            category=category,
            scores=scores,
            complexity=self.calculate_complexity(text, scores),
            has_question=question_count > 0,
            has_multiple_questions=question_count > 1,
            message_length=len(text),
        )

    def score(self, text: str) -> Dict[str, float]:
        """按注册顺序返回每个类别的累计分数"""
        lowered = text.lower()
        scores: Dict[str, float] = {}

        for category in self._categories:
            total = 0.0
            for keyword in category.keywords:
                if keyword in lowered:
                    total += category.weight
            for pattern in category.patterns:
                if pattern.search(lowered):
                    total += category.weight * PATTERN_MULTIPLIER
            scores[category.name] = total

        return scores

    def _top_category(self, scores: Dict[str, float]) -> str:
        best_name, best_score = self.default_category, 0.0
        # 严格大于才替换，保证同分时先注册者胜出
        for name, value in scores.items():
            if value > best_score:
                best_name, best_score = name, value
        return best_name

    def calculate_complexity(self, text: str, scores: Dict[str, float]) -> float:
        """
        计算复杂度

        - 长度每超过一个台阶 +1
        - 每个分数超过阈值的类别 +0.5
        - 特定高价值类别额外加分
        - 最高 5 分
        """
        config = self._complexity
        complexity = 0.0

        for step in config.length_steps:
            if len(text) > step:
                complexity += 1

        high_score_categories = sum(
            1 for value in scores.values() if value > config.high_score_threshold
        )
        complexity += high_score_categories * config.high_score_increment

        for category, min_score, bonus in config.category_bonus:
            if scores.get(category, 0.0) > min_score:
                complexity += bonus

        return min(complexity, config.max)
