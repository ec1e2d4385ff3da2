"""
recipe_crawler adaptation module.
Domain health tracking and recovery strategy selection.
"""

from recipe_crawler.adaptation.domain_health import DomainAnalysis, DomainHealthTracker
from recipe_crawler.adaptation.strategies import (
    ActionKind,
    AdaptationStrategy,
    StrategyAction,
    StrategyCatalog,
    StrategyTrigger,
)

__all__ = [
    "DomainAnalysis",
    "DomainHealthTracker",
    "ActionKind",
    "AdaptationStrategy",
    "StrategyAction",
    "StrategyCatalog",
    "StrategyTrigger",
]
