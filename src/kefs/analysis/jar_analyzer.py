"""Lists the fully qualified class names contained in a jar."""

from __future__ import annotations

import logging
import re
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Union

logger = logging.getLogger(__name__)

_SYNTHETIC = re.compile(r".*\$\d")


@dataclass(frozen=True)
class JarAnalysisSuccess:
    fq_names: FrozenSet[str]


@dataclass(frozen=True)
class JarAnalysisFailure:
    message: str


JarAnalysis = Union[JarAnalysisSuccess, JarAnalysisFailure]


def _fq_name(entry: str):
    if not entry.endswith(".class"):
        return None
    base = entry[: -len(".class")]
    if base.endswith("module-info") or base.endswith("package-info"):
        return None
    if "special$$inlined" in base or _SYNTHETIC.fullmatch(base):
        return None
    return base.replace("/", ".").replace("$", ".")


def analyze_jar(path: Path) -> JarAnalysis:
    """Return the class names of ``path``.

    Nested classes are flattened to dotted form; module and package
    descriptors, anonymous classes and inlined lambdas are skipped.
    """
    path = Path(path)
    if not path.is_file():
        return JarAnalysisFailure(f"File does not exist or is not a regular file: {path}")
    try:
        with zipfile.ZipFile(path) as archive:
            names = set()
            for info in archive.infolist():
                if info.is_dir():
                    continue
                fq_name = _fq_name(info.filename)
                if fq_name is not None:
                    names.add(fq_name)
    except (OSError, zipfile.BadZipFile) as exc:
        logger.debug("Jar analysis failed for %s: %s", path, exc)
        return JarAnalysisFailure(f"Failed to analyze JAR: {exc}")
    return JarAnalysisSuccess(frozenset(names))
