"""Live feedback: debounced validation, diagnostics, activity feed and progress."""

from .activity import ActivityFeed, FeedbackAction, FeedbackItem, FeedbackType, ProgressTask, ProgressTracker
from .debounce import KeyedDebouncer
from .diagnostics import DiagnosticRecord, DiagnosticsReconciler, Severity, ValidationIssue
from .engine import FeedbackEngine, FeedbackEngineConfig
from .surface import EditorSurface, LoggingSurface
from .validators import PythonSyntaxValidator, Validator, is_code_file

__all__ = [
    "ActivityFeed",
    "FeedbackAction",
    "FeedbackItem",
    "FeedbackType",
    "ProgressTask",
    "ProgressTracker",
    "KeyedDebouncer",
    "DiagnosticRecord",
    "DiagnosticsReconciler",
    "Severity",
    "ValidationIssue",
    "FeedbackEngine",
    "FeedbackEngineConfig",
    "EditorSurface",
    "LoggingSurface",
    "PythonSyntaxValidator",
    "Validator",
    "is_code_file",
]
