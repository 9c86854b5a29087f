"""Runtime exception analysis package.

Stack traces are correlated with the classes of cached jars; matches are
recorded per jar and can be rendered as text reports.
"""

from .correlation import distinct_stacktrace, is_probably_incompatible, match
from .reporter import ExceptionReporter, ExceptionsReport
from .service import ExceptionAnalyzerService
from .throwable import StackFrame, ThrowableInfo

__all__ = [
    "distinct_stacktrace",
    "is_probably_incompatible",
    "match",
    "ExceptionReporter",
    "ExceptionsReport",
    "ExceptionAnalyzerService",
    "StackFrame",
    "ThrowableInfo",
]
