"""
Data models for semantic routing.
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional


@dataclass(frozen=True)
class ClassificationResult:
    """
    Result of classifying one message.

    Attributes:
        category: Top category label (ties go to the first registered category)
        scores: Accumulated score per category, in registry order
        complexity: Derived complexity score, 0 to 5
        has_question: Whether the text contains a question mark
        has_multiple_questions: Whether the text contains more than one question mark
        message_length: Length of the classified text
    """
    category: str
    scores: Mapping[str, float]
    complexity: float = 0.0
    has_question: bool = False
    has_multiple_questions: bool = False
    message_length: int = 0

    def __post_init__(self):
        # 冻结分数表，保证结果不可变
        object.__setattr__(self, "scores", MappingProxyType(dict(self.scores)))

    @property
    def score(self) -> float:
        """Score of the top category."""
        return self.scores.get(self.category, 0.0)


@dataclass(frozen=True)
class ModelInfo:
    """One entry of the model catalog."""
    key: str  # "provider.type", e.g. "gemini.flash"
    id: str
    name: str
    provider: str
    icon: str = ""
    description: str = ""


@dataclass(frozen=True)
class RoutingDecision:
    """
    Routing decision for one request.

    Attributes:
        provider: Chosen provider id
        model_id: Chosen model id
        model_name: Display name of the model
        reason: Human-readable reason code
        icon: Display icon/tag
        category: Category of the classification that produced the decision
        complexity: Complexity of that classification
    """
    provider: str
    model_id: str
    model_name: str
    reason: str
    icon: str = ""
    category: Optional[str] = None
    complexity: float = 0.0


@dataclass(frozen=True)
class CategoryRule:
    """A category-specific routing rule: category, threshold, target model, reason."""
    category: str
    min_score: float
    model: str
    reason: str


@dataclass
class UsageCounter:
    """
    Rolling per-process usage counters.

    Counts are halved (not reset) once ``total`` reaches ``ceiling``, which keeps
    the recent ratio while bounding the magnitude.
    """
    counts: Dict[str, int] = field(default_factory=dict)
    total: int = 0
    ceiling: int = 100

    def count(self, provider: str) -> int:
        return self.counts.get(provider, 0)

    def ratio(self, provider: str) -> float:
        """Observed share of ``provider``; 0.0 before any decision."""
        if self.total == 0:
            return 0.0
        return self.count(provider) / self.total

    def record(self, provider: str) -> None:
        """Count one decision for ``provider`` and apply the halving rule."""
        self.counts[provider] = self.count(provider) + 1
        self.total += 1

        if self.total >= self.ceiling:
            # 四舍五入减半，总数取各项之和
            self.counts = {name: (value + 1) // 2 for name, value in self.counts.items()}
            self.total = sum(self.counts.values())

    def snapshot(self) -> Dict:
        """Read-only view of the counters, with percentage ratios."""
        providers = {
            name: {
                "count": value,
                "ratio": f"{value / self.total * 100:.1f}%" if self.total else "0%",
            }
            for name, value in self.counts.items()
        }
        return {"total": self.total, "providers": providers}

    def reset(self) -> None:
        self.counts = {}
        self.total = 0

