"""Attribution of runtime exceptions to the resolved jars that caused them."""

from __future__ import annotations

import logging
from typing import Iterable, List, Mapping, Optional, Set

from kefs.analysis.throwable import ThrowableInfo, as_throwable_info
from kefs.common.logging_utils import extra_context, is_debug_enabled
from kefs.models import JarId

logger = logging.getLogger(__name__)

# JVM classes signalling binary incompatibility; LinkageError subclasses included
INCOMPATIBILITY_CLASSES = frozenset({
    "ClassNotFoundException",
    "NoClassDefFoundError",
    "LinkageError",
    "ClassCastException",
    "IncompatibleClassChangeError",
    "NoSuchMethodError",
    "NoSuchFieldError",
    "AbstractMethodError",
    "IllegalAccessError",
    "InstantiationError",
    "ClassCircularityError",
    "ClassFormatError",
    "UnsupportedClassVersionError",
    "VerifyError",
    "UnsatisfiedLinkError",
    "BootstrapMethodError",
    "ExceptionInInitializerError",
})

PYTHON_INCOMPATIBILITY_CLASSES = frozenset({
    "builtins.ImportError",
    "builtins.ModuleNotFoundError",
})


def _frame_matches(lookup: Mapping[JarId, Set[str]], info: ThrowableInfo) -> List[Set[JarId]]:
    per_frame = []
    for frame in info.frames:
        name = frame.lookup_name
        owners = {jar_id for jar_id, names in lookup.items() if name in names}
        if owners:
            per_frame.append(owners)
    return per_frame


def _narrow(per_frame: List[Set[JarId]]) -> Set[JarId]:
    intersection = set.intersection(*per_frame)
    if intersection:
        return intersection
    # entries that alone explain some frame
    sole = {next(iter(owners)) for owners in per_frame if len(owners) == 1}
    if sole:
        return sole
    return set.union(*per_frame)


def match(lookup: Mapping[JarId, Set[str]], throwable) -> Optional[Set[JarId]]:
    """Find the jars whose classes appear in the stack trace of ``throwable``.

    Frames are checked on the outermost exception first; the cause chain is
    only consulted when no frame of an exception belongs to a known jar.

    Returns:
        The matching jar ids, or None when nothing in the chain matches.
    """
    info = as_throwable_info(throwable)
    for current in info.chain():
        per_frame = _frame_matches(lookup, current)
        if not per_frame:
            continue
        result = _narrow(per_frame)
        if is_debug_enabled(logger):
            logger.debug(
                "Exception matched",
                extra=extra_context(
                    event="decision",
                    component="correlation",
                    action="match",
                    outcome="match",
                    target=current.class_name,
                    candidates=sorted(str(j) for j in result),
                ),
            )
        return result
    return None


def is_probably_incompatible(throwable) -> bool:
    """True when the exception or a cause points at a binary incompatibility."""
    info = as_throwable_info(throwable)
    for current in info.chain():
        if current.simple_name in INCOMPATIBILITY_CLASSES:
            return True
        if any(name in PYTHON_INCOMPATIBILITY_CLASSES for name in current.type_names):
            return True
        if current.class_name in PYTHON_INCOMPATIBILITY_CLASSES:
            return True
    return False


def distinct_stacktrace(throwable, lookup: Iterable[str]) -> str:
    """Frames belonging to ``lookup`` classes, joined per exception in the chain."""
    names = set(lookup)
    info = as_throwable_info(throwable)
    own = "|".join(str(frame) for frame in info.frames if frame.lookup_name in names)
    cause = distinct_stacktrace(info.cause, names) if info.cause is not None else ""
    return f"{own}|{cause}"
