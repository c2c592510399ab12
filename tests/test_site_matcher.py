import contextlib
import io
import os
import tempfile
import textwrap
import unittest

import dataloc

SEQUENCE_SOURCE = """\
import dataloc
from dataclasses import dataclass


@dataclass
class Case:
    name: str
    want: int


def test_sequence():
    cases = [
        Case("first", 1),
        Case(name="second", want=2),
        Case(want=3, name="third"),
    ]
    for tc in cases:
        assert tc.want, dataloc.L(tc.name)
"""

MAPPING_SOURCE = """\
import dataloc

CASES = {
    "x": {"want": 1},
    'y': {"want": 2},
}


def test_mapping():
    for name, tc in CASES.items():
        assert tc["want"], dataloc.L(name)
"""

SHADOWING_SOURCE = """\
import dataloc


def test_upper():
    cases = [{"name": "shared"}]
    for tc in cases:
        assert dataloc.L(tc["name"])


def test_lower():
    cases = [
        {"name": "other"},
        {"name": "shared"},
    ]
    for tc in cases:
        assert dataloc.L(tc["name"])
"""

RECORD_TYPES_SOURCE = """\
import dataloc
from collections import namedtuple
from dataclasses import dataclass
from typing import ClassVar


@dataclass
class Base:
    name: str


@dataclass
class Derived(Base):
    registry: ClassVar[dict] = {}
    want: int = 0


Point = namedtuple("Point", "x label")


class Plain:
    def __init__(self, title, want):
        self.title = title
        self.want = want


def test_derived():
    cases = [Derived("derived", 1)]
    for tc in cases:
        assert dataloc.L(tc.name)


def test_namedtuple():
    cases = [Point(0, "nt-a"), Point(1, "nt-b")]
    for tc in cases:
        assert dataloc.L(tc.label)


def test_plain():
    cases = [Plain("plain-a", 1)]
    for tc in cases:
        assert dataloc.L(tc.title)


def test_builtin_factory():
    cases = [dict(name="kw-a"), dict(name="kw-b")]
    for tc in cases:
        assert dataloc.L(tc["name"])
"""

IMPORTED_TYPE_SOURCE = """\
import dataloc
from models import Case


def test_imported_type():
    cases = [Case("a", 1)]
    for tc in cases:
        assert dataloc.L(tc.name)
"""

ESCAPES_SOURCE = r"""
import dataloc


def test_escapes():
    cases = [
        {"name": "it's"},
        {"name": 'say "hi"'},
        {"name": "tab\there"},
        {"name": r"raw"},
    ]
    for tc in cases:
        assert dataloc.L(tc["name"])
"""

HELPER_SOURCE = """\
import dataloc


def check(name):
    return dataloc.L3(name)


def test_helper():
    cases = [
        {"name": "h1"},
        {"name": "h2"},
    ]
    for tc in cases:
        assert check(tc["name"])
"""

GLOBAL_SOURCE = """\
import dataloc

CASES = []


def setup_module():
    global CASES
    CASES = [{"name": "g1"}]


def test_global():
    for tc in CASES:
        assert dataloc.L(tc["name"])
"""

ALIAS_SOURCE = """\
import dataloc as dl
from dataloc import L as where


def test_aliases():
    cases = [("alias-a",), ("alias-b",)]
    for (name,) in cases:
        assert dl.L(name)
        assert where(name)
"""

STRINGS_SOURCE = """\
import dataloc


def test_strings():
    for name in ["s1", "s2"]:
        assert dataloc.L(name)
"""


class FixtureTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmpdir.cleanup)

    def write(self, source: str, name: str = "test_table.py") -> str:
        path = os.path.join(self._tmpdir.name, name)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(textwrap.dedent(source))
        return path

    def line_of(self, path: str, fragment: str, occurrence: int = 1) -> int:
        seen = 0
        with open(path, encoding="utf-8") as handle:
            for number, text in enumerate(handle, start=1):
                if fragment in text:
                    seen += 1
                    if seen == occurrence:
                        return number
        raise AssertionError(f"{fragment!r} not found in {path}")

    def assertResolves(self, path: str, call: str, key: str, entry: str, occurrence: int = 1) -> None:
        line = self.line_of(path, call)
        position = dataloc.resolve(path, line, key)
        self.assertEqual(
            position,
            dataloc.SourcePosition(path, self.line_of(path, entry, occurrence)),
        )


class SequenceTableTests(FixtureTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.path = self.write(SEQUENCE_SOURCE)
        self.call_line = self.line_of(self.path, "dataloc.L(tc.name)")

    def test_positional_entry(self) -> None:
        self.assertResolves(self.path, "dataloc.L(tc.name)", "first", 'Case("first", 1)')

    def test_keyword_entries(self) -> None:
        self.assertResolves(self.path, "dataloc.L(tc.name)", "second", 'name="second"')
        self.assertResolves(self.path, "dataloc.L(tc.name)", "third", 'name="third"')

    def test_missing_key(self) -> None:
        self.assertIsNone(dataloc.resolve(self.path, self.call_line, "missing"))
        self.assertEqual(dataloc.locate_at(self.path, self.call_line, "missing"), dataloc.UNKNOWN)

    def test_locate_at_renders_path_and_line(self) -> None:
        entry_line = self.line_of(self.path, 'name="second"')
        self.assertEqual(
            dataloc.locate_at(self.path, self.call_line, "second"),
            f"{self.path}:{entry_line}",
        )

    def test_repeated_resolution_is_stable(self) -> None:
        first = dataloc.resolve(self.path, self.call_line, "third")
        second = dataloc.resolve(self.path, self.call_line, "third")
        self.assertEqual(first, second)

    def test_every_entry_round_trips(self) -> None:
        (table,) = dataloc.scan_tables(self.path)
        for entry in table.entries:
            position = dataloc.resolve(self.path, self.call_line, entry.key)
            self.assertEqual(position, dataloc.SourcePosition(self.path, entry.line))

    def test_line_without_lookup_call(self) -> None:
        self.assertIsNone(dataloc.resolve(self.path, 1, "first"))


class MappingTableTests(FixtureTestCase):
    def test_double_and_single_quoted_keys(self) -> None:
        path = self.write(MAPPING_SOURCE)
        self.assertResolves(path, "dataloc.L(name)", "x", '"x":')
        self.assertResolves(path, "dataloc.L(name)", "y", "'y':")


class BindingScopeTests(FixtureTestCase):
    def test_same_name_in_two_functions(self) -> None:
        path = self.write(SHADOWING_SOURCE)
        first_call = self.line_of(path, 'dataloc.L(tc["name"])', 1)
        second_call = self.line_of(path, 'dataloc.L(tc["name"])', 2)
        self.assertEqual(
            dataloc.resolve(path, first_call, "shared"),
            dataloc.SourcePosition(path, self.line_of(path, '{"name": "shared"}', 1)),
        )
        self.assertEqual(
            dataloc.resolve(path, second_call, "shared"),
            dataloc.SourcePosition(path, self.line_of(path, '{"name": "shared"}', 2)),
        )

    def test_global_reassignment_wins(self) -> None:
        path = self.write(GLOBAL_SOURCE)
        self.assertResolves(path, 'dataloc.L(tc["name"])', "g1", '{"name": "g1"}')

    def test_import_aliases(self) -> None:
        path = self.write(ALIAS_SOURCE)
        self.assertResolves(path, "dl.L(name)", "alias-b", '("alias-a",), ("alias-b",)')
        self.assertResolves(path, "where(name)", "alias-a", '("alias-a",), ("alias-b",)')

    def test_plain_string_table(self) -> None:
        path = self.write(STRINGS_SOURCE)
        self.assertResolves(path, "dataloc.L(name)", "s2", '["s1", "s2"]')

    def test_helper_layer_line(self) -> None:
        path = self.write(HELPER_SOURCE)
        self.assertResolves(path, 'assert check(tc["name"])', "h2", '{"name": "h2"}')


class RecordTypeTests(FixtureTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.path = self.write(RECORD_TYPES_SOURCE)

    def test_inherited_dataclass_fields(self) -> None:
        self.assertResolves(self.path, "dataloc.L(tc.name)", "derived", 'Derived("derived", 1)')

    def test_namedtuple_field_string(self) -> None:
        self.assertResolves(self.path, "dataloc.L(tc.label)", "nt-b", 'Point(0, "nt-a")')

    def test_init_parameters(self) -> None:
        self.assertResolves(self.path, "dataloc.L(tc.title)", "plain-a", 'Plain("plain-a", 1)')

    def test_unbound_factory_matches_keywords(self) -> None:
        self.assertResolves(self.path, 'dataloc.L(tc["name"])', "kw-b", 'dict(name="kw-a")')

    def test_unresolved_type_is_reported(self) -> None:
        path = self.write(IMPORTED_TYPE_SOURCE, name="test_imported.py")
        line = self.line_of(path, "dataloc.L(tc.name)")
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            self.assertIsNone(dataloc.resolve(path, line, "a"))
        self.assertIn("could not resolve type of Case", stderr.getvalue())


class LiteralTokenTests(FixtureTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.path = self.write(ESCAPES_SOURCE)
        self.call_line = self.line_of(self.path, 'dataloc.L(tc["name"])')

    def test_quote_forms(self) -> None:
        self.assertEqual(dataloc.quote_forms("a"), ("'a'", '"a"'))
        self.assertEqual(dataloc.quote_forms("it's"), ("'it\\'s'", '"it\'s"'))
        self.assertEqual(dataloc.quote_forms("a\nb"), ("'a\\nb'", '"a\\nb"'))
        self.assertEqual(dataloc.quote_forms("back\\slash"), ("'back\\\\slash'", '"back\\\\slash"'))

    def test_embedded_quotes(self) -> None:
        self.assertEqual(
            dataloc.resolve(self.path, self.call_line, "it's"),
            dataloc.SourcePosition(self.path, self.line_of(self.path, "it's")),
        )
        self.assertEqual(
            dataloc.resolve(self.path, self.call_line, 'say "hi"'),
            dataloc.SourcePosition(self.path, self.line_of(self.path, "say")),
        )

    def test_escape_sequences(self) -> None:
        self.assertEqual(
            dataloc.resolve(self.path, self.call_line, "tab\there"),
            dataloc.SourcePosition(self.path, self.line_of(self.path, "tab")),
        )

    def test_prefixed_literal_never_matches(self) -> None:
        self.assertIsNone(dataloc.resolve(self.path, self.call_line, "raw"))


class FailureCollapseTests(FixtureTestCase):
    def test_unparsable_source(self) -> None:
        path = self.write("def broken(:\n    pass\n")
        with self.assertRaises(dataloc.ParseError):
            dataloc.resolve(path, 1, "x")
        self.assertEqual(dataloc.locate_at(path, 1, "x"), dataloc.UNKNOWN)

    def test_missing_file(self) -> None:
        path = os.path.join(self._tmpdir.name, "absent.py")
        with self.assertRaises(OSError):
            dataloc.resolve(path, 1, "x")
        self.assertEqual(dataloc.locate_at(path, 1, "x"), dataloc.UNKNOWN)


if __name__ == "__main__":
    unittest.main()
