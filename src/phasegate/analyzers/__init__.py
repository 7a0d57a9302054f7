from phasegate.analyzers.base import (
    AgentAnalyzer,
    Analyzer,
    ContextBundle,
    extract_json_objects,
    parse_report,
)
from phasegate.analyzers.dispatcher import AnalyzerDispatcher, Failure, FindingsBatch
from phasegate.analyzers.performance import PerformanceReviewer
from phasegate.analyzers.report import ReportFileAnalyzer
from phasegate.analyzers.security import SecurityReviewer

__all__ = [
    "AgentAnalyzer",
    "Analyzer",
    "AnalyzerDispatcher",
    "ContextBundle",
    "Failure",
    "FindingsBatch",
    "PerformanceReviewer",
    "ReportFileAnalyzer",
    "SecurityReviewer",
    "extract_json_objects",
    "parse_report",
]
