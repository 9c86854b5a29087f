"""Tests for stack trace parsing and exception-to-jar correlation."""

import pytest

from kefs.analysis.correlation import distinct_stacktrace, is_probably_incompatible, match
from kefs.analysis.throwable import StackFrame, ThrowableInfo, as_throwable_info, parse_all
from kefs.models import JarId
from kefs.versioning.models import RequestedVersion, ResolvedVersion

TRACE = """\
2025-01-01 12:00:00,000 [  1234]  ERROR - #c.i.o.a.i.FirPluginHost - compiler plugin failed
java.lang.IllegalStateException: boom
\tat com.example.plugin.Transformer.visit(Transformer.kt:42)
\tat com.example.plugin.Transformer$Nested.run(Transformer.kt:10)
\tat org.jetbrains.kotlin.fir.Session.process(Session.kt:5)
Caused by: java.lang.NoClassDefFoundError: com/example/Missing
\tat com.example.shared.Loader.load(Loader.kt:3)
\t... 3 more
2025-01-01 12:00:01,000 [  1235]  INFO - next line
"""


def _jar_id(maven_id, plugin="example"):
    return JarId(plugin, maven_id, RequestedVersion("1.0.0"), ResolvedVersion("1.0.0"))


def _info(*class_names, cause=None, name="java.lang.RuntimeException"):
    frames = tuple(StackFrame(cls, "call", "File.kt:1") for cls in class_names)
    return ThrowableInfo(name, None, frames, cause)


class TestParsing:
    """Tests for parsing JVM stack traces."""

    def test_parse_trace_with_cause(self):
        """Header, frames and cause are parsed; surrounding log lines are ignored."""
        info = ThrowableInfo.parse(TRACE)

        assert info.class_name == "java.lang.IllegalStateException"
        assert info.message == "boom"
        assert info.simple_name == "IllegalStateException"
        assert [str(f) for f in info.frames] == [
            "com.example.plugin.Transformer.visit(Transformer.kt:42)",
            "com.example.plugin.Transformer$Nested.run(Transformer.kt:10)",
            "org.jetbrains.kotlin.fir.Session.process(Session.kt:5)",
        ]
        assert info.cause.class_name == "java.lang.NoClassDefFoundError"
        assert info.cause.message == "com/example/Missing"
        assert [f.class_name for f in info.cause.frames] == ["com.example.shared.Loader"]

    def test_nested_class_lookup_name(self):
        """Nested class separators become dots for lookups."""
        assert StackFrame("a.B$C", "m").lookup_name == "a.B.C"

    def test_parse_multiple_traces(self):
        """Every trace in a log excerpt is returned in order."""
        text = TRACE + "\njava.lang.RuntimeException\n\tat a.B.c(B.kt:1)\n"

        traces = parse_all(text)

        assert [t.class_name for t in traces] == ["java.lang.IllegalStateException", "java.lang.RuntimeException"]
        assert traces[1].message is None

    def test_header_without_frames_is_dropped(self):
        """A header line not followed by frames does not produce a trace."""
        text = "java.lang.IllegalStateException: lonely\njava.lang.RuntimeException: real\n\tat a.B.c(B.kt:1)\n"

        traces = parse_all(text)

        assert len(traces) == 1
        assert traces[0].message == "real"

    def test_module_prefixed_frames(self):
        """Frames with a module prefix keep only the class name."""
        info = ThrowableInfo.parse("java.lang.Error\n\tat java.base/java.lang.Thread.run(Thread.java:1583)\n")
        assert info.frames[0].class_name == "java.lang.Thread"

    def test_no_trace(self):
        """Text without a trace parses to nothing."""
        assert ThrowableInfo.parse("just a log line\nand another") is None

    def test_format_round_trip(self):
        """Formatting uses the JVM layout and parses back to an equal value."""
        info = ThrowableInfo.parse(TRACE)
        text = info.format()

        assert "Caused by: java.lang.NoClassDefFoundError: com/example/Missing" in text
        assert ThrowableInfo.parse(text) == info


class TestFromException:
    """Tests for converting Python exceptions."""

    def test_cause_chain(self):
        """Explicit causes become the cause chain."""
        try:
            try:
                raise KeyError("inner")
            except KeyError as exc:
                raise RuntimeError("outer") from exc
        except RuntimeError as exc:
            info = ThrowableInfo.from_exception(exc)

        assert info.class_name == "builtins.RuntimeError"
        assert info.message == "outer"
        assert info.cause.class_name == "builtins.KeyError"
        assert info.cause.cause is None
        assert info.frames

    def test_frames_innermost_first(self):
        """The raising function is the first frame."""
        def raiser():
            raise ValueError()

        try:
            raiser()
        except ValueError as exc:
            info = ThrowableInfo.from_exception(exc)

        assert info.message is None
        assert info.frames[0].method_name == "raiser"
        assert info.frames[-1].method_name == "test_frames_innermost_first"
        assert info.frames[-1].class_name.endswith("TestFromException")

    def test_as_throwable_info(self):
        """Only exceptions and ThrowableInfo values are accepted."""
        info = _info("a.B")
        assert as_throwable_info(info) is info
        with pytest.raises(TypeError):
            as_throwable_info("boom")


class TestMatch:
    """Tests for attributing exceptions to jars."""

    def test_single_jar(self):
        """Frames from one jar match that jar."""
        jar = _jar_id("org.example:plugin-k2")
        lookup = {jar: {"com.example.plugin.Transformer"}, _jar_id("org.other:x"): {"org.other.X"}}

        assert match(lookup, ThrowableInfo.parse(TRACE)) == {jar}

    def test_nested_classes_match(self):
        """Nested class frames match the flattened class names of a jar."""
        jar = _jar_id("org.example:plugin-k2")
        lookup = {jar: {"com.example.plugin.Transformer.Nested"}}

        assert match(lookup, ThrowableInfo.parse(TRACE)) == {jar}

    def test_intersection_narrows(self):
        """Shared classes are narrowed to the jar common to every frame."""
        first = _jar_id("org.example:a")
        second = _jar_id("org.example:b")
        lookup = {first: {"x.Shared", "x.OnlyA"}, second: {"x.Shared"}}

        assert match(lookup, _info("x.Shared", "x.OnlyA")) == {first}

    def test_disjoint_frames_prefer_sole_owners(self):
        """Without a common jar, jars that alone explain a frame are kept."""
        first = _jar_id("org.example:a")
        second = _jar_id("org.example:b")
        third = _jar_id("org.example:c")
        lookup = {first: {"x.A", "x.Shared"}, second: {"x.B", "x.Shared"}, third: {"x.Shared"}}

        assert match(lookup, _info("x.A", "x.B", "x.Shared")) == {first, second}

    def test_ambiguous_frames(self):
        """Frames owned by several jars alike match all of them."""
        jars = [_jar_id(f"org.example:{n}") for n in "abc"]
        lookup = {jar: {"x.Shared"} for jar in jars}

        assert match(lookup, _info("x.Shared")) == set(jars)

    def test_cause_only_when_no_own_match(self):
        """The cause chain is used when the outer exception has no match."""
        jar = _jar_id("org.example:a")
        other = _jar_id("org.example:b")
        lookup = {jar: {"x.A"}, other: {"x.B"}}

        assert match(lookup, _info("y.Unrelated", cause=_info("x.A"))) == {jar}
        assert match(lookup, _info("x.B", cause=_info("x.A"))) == {other}

    def test_no_match(self):
        """An exception unrelated to any jar matches nothing."""
        assert match({_jar_id("org.example:a"): {"x.A"}}, _info("y.B")) is None


class TestIncompatibility:
    """Tests for is_probably_incompatible."""

    @pytest.mark.parametrize(
        "name",
        ["java.lang.NoClassDefFoundError", "java.lang.NoSuchMethodError", "java.lang.ClassNotFoundException",
         "java.lang.AbstractMethodError", "java.lang.LinkageError"],
    )
    def test_linkage_errors(self, name):
        """Class loading and linkage errors are incompatibilities."""
        assert is_probably_incompatible(_info("a.B", name=name))

    def test_in_cause(self):
        """An incompatibility anywhere in the chain counts."""
        cause = _info("a.B", name="java.lang.NoSuchFieldError")
        assert is_probably_incompatible(_info("a.B", cause=cause))

    def test_regular_exception(self):
        """Ordinary exceptions are not incompatibilities."""
        assert not is_probably_incompatible(_info("a.B", name="java.lang.IllegalStateException"))

    def test_python_import_error(self):
        """Python import failures count as incompatibilities."""
        try:
            raise ModuleNotFoundError("no module named x")
        except ModuleNotFoundError as exc:
            assert is_probably_incompatible(exc)
        try:
            raise ValueError("x")
        except ValueError as exc:
            assert not is_probably_incompatible(exc)


class TestDistinctStacktrace:
    """Tests for distinct_stacktrace."""

    def test_only_known_frames(self):
        """Only frames of known classes are kept, per exception in the chain."""
        info = ThrowableInfo.parse(TRACE)
        lookup = {"com.example.plugin.Transformer", "com.example.shared.Loader"}

        assert distinct_stacktrace(info, lookup) == (
            "com.example.plugin.Transformer.visit(Transformer.kt:42)|"
            "com.example.shared.Loader.load(Loader.kt:3)|"
        )

    def test_no_known_frames(self):
        """Without known frames only the separators remain."""
        assert distinct_stacktrace(_info("a.B"), set()) == "|"
