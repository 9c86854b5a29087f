"""Language-neutral view of an exception and its cause chain.

``ThrowableInfo`` is built either from a live Python exception or by parsing
JVM-style stack trace text as found in IDE and build logs::

    java.lang.IllegalStateException: boom
        at com.example.Foo.bar(Foo.kt:10)
    Caused by: java.lang.NoClassDefFoundError: com/example/Baz
        at com.example.Baz.<clinit>(Baz.kt:3)
        ... 4 more
"""
from __future__ import annotations

import re
import traceback
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

_FRAME = re.compile(
    r"^at\s+(?:[\w.@-]+/)*(?P<cls>[\w$.<>]+)\.(?P<method>[\w$<>-]+)\((?P<location>[^)]*)\)\s*$"
)
_HEADER = re.compile(r"^(?P<cls>[A-Za-z_$][\w$]*(?:\.[A-Za-z_$][\w$]*)*)(?::\s?(?P<message>.*))?$")
_MORE = re.compile(r"^\.\.\.\s+\d+\s+more$")
_CAUSED_BY = "Caused by: "
_SUPPRESSED = "Suppressed: "


@dataclass(frozen=True)
class StackFrame:
    class_name: str
    method_name: str
    location: str = ""

    @property
    def lookup_name(self) -> str:
        """Class name in the dotted form produced by the jar analyzer."""
        return self.class_name.replace("$", ".")

    def __str__(self) -> str:
        return f"{self.class_name}.{self.method_name}({self.location})"


@dataclass(frozen=True)
class ThrowableInfo:
    class_name: str
    message: Optional[str]
    frames: Tuple[StackFrame, ...] = ()
    cause: Optional["ThrowableInfo"] = None
    type_names: Tuple[str, ...] = field(default=(), compare=False)

    @property
    def simple_name(self) -> str:
        return self.class_name.rsplit(".", 1)[-1].rsplit("$", 1)[-1]

    def chain(self) -> Iterator["ThrowableInfo"]:
        current: Optional[ThrowableInfo] = self
        while current is not None:
            yield current
            current = current.cause

    def format(self) -> str:
        """Render in the JVM ``printStackTrace`` layout."""
        lines = []
        for index, info in enumerate(self.chain()):
            header = info.class_name if info.message is None else f"{info.class_name}: {info.message}"
            lines.append(header if index == 0 else f"{_CAUSED_BY}{header}")
            lines.extend(f"\tat {frame}" for frame in info.frames)
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.format()

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ThrowableInfo":
        """Convert a Python exception, following ``__cause__``/``__context__``."""
        chain: List[BaseException] = []
        seen = set()
        current: Optional[BaseException] = exc
        while current is not None and id(current) not in seen:
            seen.add(id(current))
            chain.append(current)
            if current.__cause__ is not None:
                current = current.__cause__
            elif not current.__suppress_context__:
                current = current.__context__
            else:
                current = None

        info: Optional[ThrowableInfo] = None
        for item in reversed(chain):
            exc_type = type(item)
            message = str(item)
            info = cls(
                class_name=f"{exc_type.__module__}.{exc_type.__qualname__}",
                message=message or None,
                frames=tuple(_python_frames(item)),
                cause=info,
                type_names=tuple(f"{t.__module__}.{t.__qualname__}" for t in exc_type.__mro__),
            )
        if info is None:
            raise ValueError("Exception chain is empty")
        return info

    @classmethod
    def parse(cls, text: str) -> Optional["ThrowableInfo"]:
        """Parse the first stack trace found in ``text``."""
        parsed = parse_all(text)
        return parsed[0] if parsed else None


def as_throwable_info(throwable) -> ThrowableInfo:
    if isinstance(throwable, ThrowableInfo):
        return throwable
    if isinstance(throwable, BaseException):
        return ThrowableInfo.from_exception(throwable)
    raise TypeError(f"Expected an exception or ThrowableInfo, got {type(throwable).__name__}")


def _python_frames(exc: BaseException) -> Iterator[StackFrame]:
    # innermost call first, like JVM traces
    frames = list(traceback.walk_tb(exc.__traceback__))
    for frame, lineno in reversed(frames):
        code = frame.f_code
        module = frame.f_globals.get("__name__", "<unknown>")
        qualname = getattr(code, "co_qualname", code.co_name)
        owner, _, _ = qualname.rpartition(".")
        owner = owner.replace(".<locals>", "")
        class_name = f"{module}.{owner}" if owner else module
        yield StackFrame(class_name, code.co_name, f"{code.co_filename}:{lineno}")


@dataclass
class _Builder:
    class_name: str
    message: Optional[str]
    frames: List[StackFrame] = field(default_factory=list)
    cause: Optional["_Builder"] = None

    def build(self) -> ThrowableInfo:
        return ThrowableInfo(
            class_name=self.class_name,
            message=self.message,
            frames=tuple(self.frames),
            cause=self.cause.build() if self.cause else None,
            type_names=(self.class_name,),
        )


def _header(line: str) -> Optional[_Builder]:
    matched = _HEADER.match(line)
    if matched is None:
        return None
    class_name = matched.group("cls")
    simple = class_name.rsplit(".", 1)[-1]
    if "." not in class_name and not simple.endswith(("Exception", "Error", "Throwable")):
        return None
    return _Builder(class_name, matched.group("message"))


def parse_all(text: str) -> List[ThrowableInfo]:
    """Parse every top-level stack trace in a log excerpt.

    Lines that are neither part of a trace nor a trace header end the
    current trace; a trace without frames is dropped.
    """
    results: List[_Builder] = []
    top: Optional[_Builder] = None
    current: Optional[_Builder] = None

    def finish() -> None:
        nonlocal top, current
        if top is not None and top.frames:
            results.append(top)
        top = current = None

    for raw in text.splitlines():
        line = raw.strip()
        if not line or _MORE.match(line):
            continue

        frame = _FRAME.match(line)
        if frame is not None:
            if current is not None:
                current.frames.append(StackFrame(frame.group("cls"), frame.group("method"), frame.group("location")))
            continue

        if line.startswith(_CAUSED_BY) and current is not None:
            cause = _header(line[len(_CAUSED_BY):])
            if cause is not None:
                current.cause = cause
                current = cause
                continue

        if line.startswith(_SUPPRESSED) and current is not None:
            # suppressed traces are not part of the cause chain
            current = _Builder("<suppressed>", None)
            continue

        builder = _header(line)
        if builder is not None:
            finish()
            top = current = builder
            continue

        if current is not None and not current.frames:
            current.message = line if current.message is None else f"{current.message}\n{line}"
            continue

        finish()

    finish()
    return [builder.build() for builder in results]
