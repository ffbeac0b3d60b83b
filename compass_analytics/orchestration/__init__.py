"""Request/response surface of the analytics core."""

from .orchestrator import AnalysisOptions, AnalyticsOrchestrator, create_orchestrator

__all__ = ["AnalysisOptions", "AnalyticsOrchestrator", "create_orchestrator"]
