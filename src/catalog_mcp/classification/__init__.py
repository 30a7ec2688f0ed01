"""Domain/tier classification of catalog entries."""

from .classifier import Classifier, tier_label, tier_semantic_label
from .rules import ClassifierConfig, DomainRule, ServiceHint, load_classifier_config

__all__ = [
    "Classifier",
    "ClassifierConfig",
    "DomainRule",
    "ServiceHint",
    "load_classifier_config",
    "tier_label",
    "tier_semantic_label",
]
