#!/usr/bin/env python3
"""
dataloc - source locations for table-driven test cases

High-level goals:
- Given the key of a test case known only at run time, point at the line where
  that case was declared instead of the loop that runs it
- Parse the caller's own source (via the `ast` module) and track bindings per
  scope, so shadowed names never resolve to the wrong table
- Never fail the caller: every miss collapses to the "unknown" result

Typical use inside a test:

    cases = [
        Case(name="empty", want=0),
        Case(name="one", want=1),
    ]
    for tc in cases:
        with self.subTest(tc.name):
            self.assertEqual(count(tc.name), tc.want, dataloc.L(tc.name))

The lookup argument must be `tc.field`, `tc["field"]` or `tc[0]` where `tc` is
a loop variable over a literal table, or a bare loop variable bound to the
table's keys (`for name, tc in cases.items()`) or to one slot of an unpacked
entry (`for name, want in cases`).
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Optional, Tuple, Set, Any, Literal
import argparse
import ast
from contextlib import contextmanager
import json
import os
import sys
import tokenize

import yaml

__version__ = "0.1.0"

UNKNOWN = "unknown"

# Calls recognised as the lookup function, reached through `import dataloc`
# or `from dataloc import L`.
LOOKUP_MODULE = "dataloc"
LOOKUP_FUNCTIONS = frozenset({"L", "L3", "L4", "L5", "L6", "locate"})

DEBUG = os.environ.get("DATALOC_DEBUG", "") not in ("", "0")

_VIEW_METHODS = frozenset({"items", "keys", "values"})
_PASSTHROUGH_BUILTINS = frozenset({"enumerate", "sorted", "reversed", "list", "tuple", "iter"})
_RECORD_FACTORIES = frozenset({"namedtuple", "NamedTuple"})
_MAX_ALIAS_DEPTH = 16


# ============================================================
# ===================== DIAGNOSTICS ==========================
# ============================================================

def _write_diagnostic(text: str) -> None:
    stream = sys.stderr
    if stream is None:
        return
    try:
        stream.write(text)
    except (OSError, ValueError):
        # closed or detached stderr
        pass


def _logf(fmt: str, *args: Any) -> None:
    _write_diagnostic("[dataloc] " + (fmt % args) + "\n")


def _debugf(fmt: str, *args: Any) -> None:
    if DEBUG:
        _write_diagnostic("[dataloc] debug: " + (fmt % args) + "\n")


# ============================================================
# =============== SOURCE LOCATION & FILES ====================
# ============================================================

@dataclass(frozen=True)
class SourcePosition:
    file: str
    line: int  # 1-based

    def __str__(self) -> str:
        return f"{self.file}:{self.line}"


@dataclass
class ParsedFile:
    """
    A parsed source file. The text is kept next to the tree because literal
    matching compares raw tokens, not evaluated values.
    """
    path: str
    source: str
    tree: ast.Module

    def position(self, node: ast.AST) -> SourcePosition:
        return SourcePosition(self.path, node.lineno)

    def segment(self, node: ast.AST) -> Optional[str]:
        return ast.get_source_segment(self.source, node)


class ParseError(Exception):
    """Raised when a source file cannot be turned into a syntax tree."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


# ============================================================
# ================= SCOPES & BINDINGS ========================
# ============================================================

@dataclass
class Scope:
    scope_id: int
    kind: Literal["module", "class", "function", "lambda", "comprehension"]
    parent: Optional[int] = None
    node: Optional[ast.AST] = None

    assigned: Set[str] = field(default_factory=set)
    declared_global: Set[str] = field(default_factory=set)
    declared_nonlocal: Set[str] = field(default_factory=set)
    instance_attrs: Set[str] = field(default_factory=set)  # self.x = ... inside methods (class scopes only)


@dataclass(frozen=True)
class Binding:
    """
    The variable a name refers to: the owning scope (an index into
    BindingIndex.scopes) plus the name. Two functions that both assign
    `cases` own two different bindings.
    """
    scope: int
    name: str


@dataclass
class FieldGroup:
    names: List[str]
    annotation: Optional[str] = None


@dataclass
class RecordType:
    """
    A record-like type declared in the file: an annotated class (dataclass,
    NamedTuple, attrs, ...), a plain class with an __init__, or a
    namedtuple(...) assignment.
    """
    name: str
    fields: List[FieldGroup] = field(default_factory=list)
    bases: List[ast.expr] = field(default_factory=list)
    node: Optional[ast.AST] = None


@dataclass
class RangeSource:
    collection: ast.expr
    loop: ast.AST
    position: Optional[int] = None  # slot inside an unpacked loop target

    def encloses(self, line: int) -> bool:
        end = getattr(self.loop, "end_lineno", None) or self.loop.lineno
        return self.loop.lineno <= line <= end


@dataclass
class BindingIndex:
    scopes: List[Scope] = field(default_factory=list)

    type_decls: Dict[Binding, RecordType] = field(default_factory=dict)
    var_inits: Dict[Binding, ast.expr] = field(default_factory=dict)
    range_values: Dict[Binding, List[RangeSource]] = field(default_factory=dict)
    range_keys: Dict[Binding, List[RangeSource]] = field(default_factory=dict)
    range_elements: Dict[Binding, List[RangeSource]] = field(default_factory=dict)

    module_aliases: Set[Binding] = field(default_factory=set)
    function_aliases: Dict[Binding, str] = field(default_factory=dict)

    # Name nodes read in a scope, and self.x / cls.x attribute nodes
    load_scopes: Dict[ast.AST, int] = field(default_factory=dict)

    def resolve(self, node: ast.AST) -> Optional[Binding]:
        if not isinstance(node, ast.Name):
            return None
        scope_id = self.load_scopes.get(node)
        if scope_id is None:
            return None
        return self.lookup(scope_id, node.id)

    def lookup(self, scope_id: int, name: str) -> Optional[Binding]:
        """
        Resolve a name read in `scope_id` the way Python does: declared
        global/nonlocal first, then the scope's own assignments, then
        enclosing function scopes and the module (class bodies are skipped).
        Builtins and undefined names resolve to None.
        """
        scope = self.scopes[scope_id]
        if name in scope.declared_global:
            return self._module_binding(name)
        if name in scope.declared_nonlocal:
            return self._enclosing_binding(scope, name)
        if name in scope.assigned:
            return Binding(scope.scope_id, name)
        return self._enclosing_binding(scope, name)

    def owner(self, scope_id: int, name: str) -> Binding:
        """Binding written by an assignment to `name` inside `scope_id`."""
        scope = self.scopes[scope_id]
        if name in scope.declared_global:
            return Binding(0, name)
        if name in scope.declared_nonlocal:
            return self._enclosing_binding(scope, name) or Binding(scope_id, name)
        return Binding(scope_id, name)

    def member(self, node: ast.Attribute) -> Optional[Binding]:
        """Resolve `self.x` / `cls.x` inside a method to the class attribute."""
        scope_id = self.load_scopes.get(node)
        while scope_id is not None:
            scope = self.scopes[scope_id]
            if scope.kind == "function":
                if scope.parent is None:
                    return None
                owner = self.scopes[scope.parent]
                if owner.kind != "class":
                    return None
                if node.attr in owner.assigned or node.attr in owner.instance_attrs:
                    return Binding(owner.scope_id, node.attr)
                return None
            scope_id = scope.parent
        return None

    def range_source(
        self,
        table: Dict[Binding, List[RangeSource]],
        binding: Optional[Binding],
        line: int,
    ) -> Optional[RangeSource]:
        """
        Pick the loop a binding ranges over. A loop variable is shared by every
        loop of its function, so the innermost loop around `line` wins; the
        first recorded loop is the fallback.
        """
        if binding is None:
            return None
        records = table.get(binding)
        if not records:
            return None
        enclosing = [record for record in records if record.encloses(line)]
        if enclosing:
            return max(enclosing, key=lambda record: record.loop.lineno)
        return records[0]

    def fields_of(self, binding: Binding, _seen: Optional[Set[Binding]] = None) -> Optional[List[FieldGroup]]:
        """
        Field list of an indexed record type, base-class fields first.
        None when the binding is not a record type.
        """
        record = self.type_decls.get(binding)
        if record is None:
            return None
        seen = _seen if _seen is not None else set()
        if binding in seen:
            return []
        seen.add(binding)

        fields: List[FieldGroup] = []
        for base in record.bases:
            base_binding = self.resolve(base)
            if base_binding is not None and base_binding in self.type_decls:
                fields.extend(self.fields_of(base_binding, seen) or [])
        fields.extend(record.fields)
        return fields

    def _module_binding(self, name: str) -> Optional[Binding]:
        if name in self.scopes[0].assigned:
            return Binding(0, name)
        return None

    def _enclosing_binding(self, scope: Scope, name: str) -> Optional[Binding]:
        parent_id = scope.parent
        while parent_id is not None:
            parent = self.scopes[parent_id]
            if parent.kind != "class":
                if name in parent.declared_global:
                    return self._module_binding(name)
                if name in parent.assigned and name not in parent.declared_nonlocal:
                    return Binding(parent.scope_id, name)
            parent_id = parent.parent
        return None


# ============================================================
# ================== CALLER LOCATION =========================
# ============================================================

def caller_location(step: int) -> Tuple[str, int]:
    """
    File and line of the frame `step` levels above the function calling
    caller_location (0 is that function itself). The path is made relative
    to the working directory.

    Raises ValueError when the stack is not deep enough or the path cannot be
    made relative, OSError when the working directory is gone.
    """
    frame = sys._getframe(step + 1)
    try:
        path, line = frame.f_code.co_filename, frame.f_lineno
    finally:
        del frame
    _debugf("caller step %d: %s %d", step, path, line)
    cwd = os.getcwd()
    return os.path.relpath(path, cwd), line


# ============================================================
# ===================== SOURCE PARSER ========================
# ============================================================

def parse_source(path: str, source: Optional[str] = None) -> ParsedFile:
    """
    Parse a Python file into a ParsedFile. `source` skips the disk read.
    Malformed source raises ParseError; read failures raise OSError.
    """
    try:
        if source is None:
            with tokenize.open(path) as handle:
                source = handle.read()
        tree = ast.parse(source, filename=path)
    except (SyntaxError, ValueError) as exc:
        raise ParseError(path, str(exc)) from exc
    return ParsedFile(path=path, source=source, tree=tree)


# ============================================================
# ================ BINDING INDEX BUILDER =====================
# ============================================================

def build_binding_index(parsed: ParsedFile) -> BindingIndex:
    return _BindingIndexBuilder().build(parsed.tree)


class _BindingIndexBuilder(ast.NodeVisitor):
    """
    Single walk over the tree. Writes are queued against (scope, name) and
    turned into bindings once the walk is over, when every global/nonlocal
    declaration and assignment of each scope is known.
    """

    def __init__(self) -> None:
        self.index = BindingIndex()
        self._stack: List[int] = []
        self._types: List[Tuple[int, str, RecordType]] = []
        self._var_inits: List[Tuple[int, str, ast.expr]] = []
        self._ranges: List[Tuple[Dict[Binding, List[RangeSource]], int, str, RangeSource]] = []
        self._imports: List[Tuple[int, str, Optional[str]]] = []

    def build(self, tree: ast.Module) -> BindingIndex:
        self.visit(tree)
        self._finalize()
        return self.index

    # ---- scopes ----

    @contextmanager
    def _enter(self, kind: str, node: ast.AST):
        scope = Scope(
            scope_id=len(self.index.scopes),
            kind=kind,  # type: ignore[arg-type]
            parent=self._stack[-1] if self._stack else None,
            node=node,
        )
        self.index.scopes.append(scope)
        self._stack.append(scope.scope_id)
        try:
            yield scope
        finally:
            self._stack.pop()

    def _declare(self, name: str, scope_id: Optional[int] = None) -> None:
        scope = self.index.scopes[self._stack[-1] if scope_id is None else scope_id]
        if name in scope.declared_global:
            self.index.scopes[0].assigned.add(name)
        elif name not in scope.declared_nonlocal:
            scope.assigned.add(name)

    def _function_scope_id(self) -> Optional[int]:
        """Innermost scope that is not a comprehension (walrus targets land there)."""
        for scope_id in reversed(self._stack):
            if self.index.scopes[scope_id].kind != "comprehension":
                return scope_id
        return None

    def _method_owner_id(self) -> Optional[int]:
        scope = self.index.scopes[self._stack[-1]]
        if scope.kind != "function" or scope.parent is None:
            return None
        owner = self.index.scopes[scope.parent]
        return owner.scope_id if owner.kind == "class" else None

    # ---- scope-introducing nodes ----

    def visit_Module(self, node: ast.Module) -> None:
        with self._enter("module", node):
            self.generic_visit(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        for decorator in node.decorator_list:
            self.visit(decorator)
        self._visit_argument_defaults(node.args)
        if node.returns is not None:
            self.visit(node.returns)
        self._declare(node.name)
        with self._enter("function", node):
            self._declare_arguments(node.args)
            for stmt in node.body:
                self.visit(stmt)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_Lambda(self, node: ast.Lambda) -> None:
        self._visit_argument_defaults(node.args)
        with self._enter("lambda", node):
            self._declare_arguments(node.args)
            self.visit(node.body)

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        for expr in node.decorator_list + node.bases + [kw.value for kw in node.keywords]:
            self.visit(expr)
        self._declare(node.name)
        self._types.append((self._stack[-1], node.name, _record_type_from_class(node)))
        with self._enter("class", node):
            for stmt in node.body:
                self.visit(stmt)

    def _visit_comprehension(self, node: ast.AST, elements: List[ast.expr]) -> None:
        generators: List[ast.comprehension] = node.generators  # type: ignore[attr-defined]
        # the first iterable is evaluated in the enclosing scope
        self.visit(generators[0].iter)
        with self._enter("comprehension", node):
            for position, generator in enumerate(generators):
                if position:
                    self.visit(generator.iter)
                self.visit(generator.target)
                for condition in generator.ifs:
                    self.visit(condition)
            for element in elements:
                self.visit(element)

    def visit_ListComp(self, node: ast.ListComp) -> None:
        self._visit_comprehension(node, [node.elt])

    visit_SetComp = visit_ListComp
    visit_GeneratorExp = visit_ListComp

    def visit_DictComp(self, node: ast.DictComp) -> None:
        self._visit_comprehension(node, [node.key, node.value])

    def _visit_argument_defaults(self, args: ast.arguments) -> None:
        for default in args.defaults:
            self.visit(default)
        for default in args.kw_defaults:
            if default is not None:
                self.visit(default)
        for arg in _all_arguments(args):
            if arg.annotation is not None:
                self.visit(arg.annotation)

    def _declare_arguments(self, args: ast.arguments) -> None:
        for arg in _all_arguments(args):
            self._declare(arg.arg)

    # ---- names ----

    def visit_Global(self, node: ast.Global) -> None:
        self.index.scopes[self._stack[-1]].declared_global.update(node.names)

    def visit_Nonlocal(self, node: ast.Nonlocal) -> None:
        self.index.scopes[self._stack[-1]].declared_nonlocal.update(node.names)

    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, ast.Load):
            self.index.load_scopes[node] = self._stack[-1]
        else:
            self._declare(node.id)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if isinstance(node.value, ast.Name) and node.value.id in ("self", "cls"):
            self.index.load_scopes[node] = self._stack[-1]
        self.generic_visit(node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.name:
            self._declare(node.name)
        self.generic_visit(node)

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            local = alias.asname or alias.name.split(".")[0]
            self._declare(local)
            if alias.name == LOOKUP_MODULE:
                self._imports.append((self._stack[-1], local, None))

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        for alias in node.names:
            if alias.name == "*":
                continue
            local = alias.asname or alias.name
            self._declare(local)
            if node.module == LOOKUP_MODULE and alias.name in LOOKUP_FUNCTIONS:
                self._imports.append((self._stack[-1], local, alias.name))
            elif alias.name == LOOKUP_MODULE:
                self._imports.append((self._stack[-1], local, None))

    # ---- declarations ----

    def visit_Assign(self, node: ast.Assign) -> None:
        self.visit(node.value)
        for target in node.targets:
            self.visit(target)
        for target in node.targets:
            # a = b = value shares one initializer
            self._pair(target, node.value)

        if isinstance(node.value, ast.Call):
            record = _record_type_from_call(node.value)
            if record is not None:
                for target in node.targets:
                    if isinstance(target, ast.Name):
                        self._types.append((self._stack[-1], target.id, record))

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        self.visit(node.annotation)
        if node.value is not None:
            self.visit(node.value)
        self.visit(node.target)
        if node.value is not None:
            self._pair(node.target, node.value)

    def visit_NamedExpr(self, node: ast.NamedExpr) -> None:
        self.visit(node.value)
        scope_id = self._function_scope_id()
        self._declare(node.target.id, scope_id)
        if scope_id is not None:
            self._var_inits.append((scope_id, node.target.id, node.value))

    def _pair(self, target: ast.expr, value: ast.expr) -> None:
        if isinstance(target, ast.Name):
            self._var_inits.append((self._stack[-1], target.id, value))
            return

        if isinstance(target, ast.Attribute):
            owner_id = self._method_owner_id()
            if owner_id is not None and isinstance(target.value, ast.Name) and target.value.id == "self":
                self.index.scopes[owner_id].instance_attrs.add(target.attr)
                self._var_inits.append((owner_id, target.attr, value))
            return

        if not isinstance(target, (ast.Tuple, ast.List)):
            return

        names = target.elts
        starred = any(isinstance(name, ast.Starred) for name in names)
        if isinstance(value, (ast.Tuple, ast.List)):
            values = value.elts
            if not starred and not any(isinstance(v, ast.Starred) for v in values) and len(names) == len(values):
                for name, item in zip(names, values):
                    self._pair(name, item)
                return
            _debugf(
                "cannot pair %d names with %d values at line %d",
                len(names), len(values), target.lineno,
            )
            return

        if starred:
            _debugf("starred assignment at line %d is not tracked", target.lineno)
            return
        for name in names:
            if isinstance(name, ast.Name):
                self._var_inits.append((self._stack[-1], name.id, value))

    # ---- loops ----

    def visit_For(self, node: ast.For) -> None:
        self.visit(node.iter)
        self.visit(node.target)
        self._record_range(node)
        for stmt in node.body + node.orelse:
            self.visit(stmt)

    visit_AsyncFor = visit_For

    def _record_range(self, loop: ast.AST) -> None:
        target: ast.expr = loop.target  # type: ignore[attr-defined]
        collection: ast.expr = loop.iter  # type: ignore[attr-defined]
        index = self.index

        if isinstance(target, ast.Name):
            # for tc in cases / for name in mapping
            self._add_range(index.range_values, target, collection, loop)
            self._add_range(index.range_keys, target, collection, loop)
            return
        if not isinstance(target, (ast.Tuple, ast.List)):
            return

        slots = target.elts
        if len(slots) == 2 and _is_view_call(collection, "items"):
            key, value = slots
            if isinstance(key, ast.Name):
                self._add_range(index.range_keys, key, collection, loop)
            if isinstance(value, ast.Name):
                self._add_range(index.range_values, value, collection, loop)
            return
        if len(slots) == 2 and _callee_name(collection) == "enumerate":
            value = slots[1]
            if isinstance(value, ast.Name):
                self._add_range(index.range_values, value, collection, loop)
            elif isinstance(value, (ast.Tuple, ast.List)):
                self._add_elements(value.elts, collection, loop)
            return
        self._add_elements(slots, collection, loop)

    def _add_elements(self, slots: List[ast.expr], collection: ast.expr, loop: ast.AST) -> None:
        if any(isinstance(slot, ast.Starred) for slot in slots):
            return
        for position, slot in enumerate(slots):
            if isinstance(slot, ast.Name):
                self._add_range(self.index.range_elements, slot, collection, loop, position)

    def _add_range(
        self,
        table: Dict[Binding, List[RangeSource]],
        target: ast.Name,
        collection: ast.expr,
        loop: ast.AST,
        position: Optional[int] = None,
    ) -> None:
        source = RangeSource(collection=collection, loop=loop, position=position)
        self._ranges.append((table, self._stack[-1], target.id, source))

    # ---- bindings ----

    def _finalize(self) -> None:
        index = self.index
        for scope_id, name, record in self._types:
            index.type_decls.setdefault(index.owner(scope_id, name), record)
        for scope_id, name, value in self._var_inits:
            index.var_inits[index.owner(scope_id, name)] = value
        for table, scope_id, name, source in self._ranges:
            table.setdefault(index.owner(scope_id, name), []).append(source)
        for scope_id, name, function in self._imports:
            binding = index.owner(scope_id, name)
            if function is None:
                index.module_aliases.add(binding)
            else:
                index.function_aliases[binding] = function


def _all_arguments(args: ast.arguments) -> List[ast.arg]:
    result = list(args.posonlyargs) + list(args.args)
    if args.vararg is not None:
        result.append(args.vararg)
    result.extend(args.kwonlyargs)
    if args.kwarg is not None:
        result.append(args.kwarg)
    return result


def _callee_name(node: ast.AST) -> Optional[str]:
    if not isinstance(node, ast.Call):
        return None
    if isinstance(node.func, ast.Name):
        return node.func.id
    if isinstance(node.func, ast.Attribute):
        return node.func.attr
    return None


def _is_view_call(node: ast.AST, method: Optional[str] = None) -> bool:
    if not isinstance(node, ast.Call) or node.args or node.keywords:
        return False
    if not isinstance(node.func, ast.Attribute) or node.func.attr not in _VIEW_METHODS:
        return False
    return method is None or node.func.attr == method


def _is_str_constant(node: Optional[ast.AST]) -> bool:
    return isinstance(node, ast.Constant) and isinstance(node.value, str)


def _is_classvar(annotation: ast.expr) -> bool:
    if isinstance(annotation, ast.Subscript):
        annotation = annotation.value
    if isinstance(annotation, ast.Name):
        return annotation.id == "ClassVar"
    if isinstance(annotation, ast.Attribute):
        return annotation.attr == "ClassVar"
    return False


def _record_type_from_class(node: ast.ClassDef) -> RecordType:
    fields: List[FieldGroup] = []
    init: Optional[ast.FunctionDef] = None
    for stmt in node.body:
        if isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
            if _is_classvar(stmt.annotation):
                continue
            fields.append(FieldGroup([stmt.target.id], ast.unparse(stmt.annotation)))
        elif isinstance(stmt, ast.FunctionDef) and stmt.name == "__init__":
            init = stmt

    if not fields and init is not None:
        params = list(init.args.posonlyargs) + list(init.args.args)
        for param in params[1:]:
            annotation = ast.unparse(param.annotation) if param.annotation is not None else None
            fields.append(FieldGroup([param.arg], annotation))

    return RecordType(name=node.name, fields=fields, bases=list(node.bases), node=node)


def _record_type_from_call(call: ast.Call) -> Optional[RecordType]:
    """
    namedtuple("Case", "name want"), namedtuple("Case", ["name", "want"]) and
    NamedTuple("Case", [("name", str), ("want", int)]).
    """
    if _callee_name(call) not in _RECORD_FACTORIES or not call.args:
        return None
    type_name = call.args[0]
    if not _is_str_constant(type_name):
        return None

    field_spec: Optional[ast.expr] = call.args[1] if len(call.args) > 1 else None
    if field_spec is None:
        for keyword in call.keywords:
            if keyword.arg in ("field_names", "fields"):
                field_spec = keyword.value
    if field_spec is None:
        return None

    fields: List[FieldGroup] = []
    if _is_str_constant(field_spec):
        fields.append(FieldGroup(field_spec.value.replace(",", " ").split()))  # type: ignore[union-attr]
    elif isinstance(field_spec, (ast.List, ast.Tuple)):
        for item in field_spec.elts:
            if _is_str_constant(item):
                fields.append(FieldGroup([item.value]))  # type: ignore[attr-defined]
            elif isinstance(item, ast.Tuple) and item.elts and _is_str_constant(item.elts[0]):
                annotation = ast.unparse(item.elts[1]) if len(item.elts) > 1 else None
                fields.append(FieldGroup([item.elts[0].value], annotation))  # type: ignore[attr-defined]
            else:
                return None
    else:
        return None

    return RecordType(name=type_name.value, fields=fields, node=call)  # type: ignore[attr-defined]


# ============================================================
# ================= STRUCT FIELD INDEXER =====================
# ============================================================

def struct_field_index(fields: Optional[List[FieldGroup]], name: str) -> int:
    """Zero-based position of field `name`, counting every name of every group. -1 if absent."""
    if not fields:
        return -1
    position = 0
    for group in fields:
        for field_name in group.names:
            if field_name == name:
                return position
            position += 1
    return -1


def _field_name_at(fields: Optional[List[FieldGroup]], position: int) -> Optional[str]:
    names = [name for group in fields or [] for name in group.names]
    if 0 <= position < len(names):
        return names[position]
    return None


# ============================================================
# ==================== SITE MATCHER ==========================
# ============================================================

def quote_forms(value: str) -> Tuple[str, str]:
    """`value` written as a single-quoted and a double-quoted Python literal."""
    return _quote(value, "'"), _quote(value, '"')


def _quote(value: str, delimiter: str) -> str:
    body: List[str] = []
    for char in value:
        if char == delimiter:
            body.append("\\" + char)
        elif char in "'\"":
            body.append(char)
        else:
            body.append(repr(char)[1:-1])
    return delimiter + "".join(body) + delimiter


def is_string_literal(parsed: ParsedFile, node: Optional[ast.AST], value: str) -> bool:
    """
    True when `node` is a string literal whose raw token is `value` as Python
    would quote it. Compares tokens, so r"", u"", triple-quoted and implicitly
    concatenated literals never match.
    """
    if not isinstance(node, ast.Constant) or not isinstance(node.value, str):
        return False
    if node.value != value:
        return False
    return parsed.segment(node) in quote_forms(value)


def match_site(
    parsed: ParsedFile,
    index: BindingIndex,
    line: int,
    value: str,
) -> Optional[SourcePosition]:
    """
    Find the lookup call covering `line` and trace its argument to the entry
    of the test table whose key is `value`.

    When no lookup call covers the line, the line belongs to the caller of a
    helper that performs the lookup (depth > 2); every argument of every call
    on the line is tried instead. Arguments that lead to different entries
    make the result ambiguous, and None is returned.
    """
    tracked: List[ast.Call] = []
    helpers: List[ast.Call] = []
    for node in ast.walk(parsed.tree):
        if not isinstance(node, ast.Call):
            continue
        if not node.lineno <= line <= (node.end_lineno or node.lineno):
            continue
        if _is_lookup_call(index, node):
            tracked.append(node)
        else:
            helpers.append(node)

    if tracked:
        candidates = [call.args[0] for call in tracked if call.args]
    else:
        candidates = [arg for call in helpers for arg in list(call.args) + [kw.value for kw in call.keywords]]
        if not candidates:
            _debugf("no lookup call at %s:%d", parsed.path, line)

    found: List[ast.AST] = []
    for argument in candidates:
        resolved = _argument_table(index, argument, line)
        if resolved is None:
            continue
        table, key, position = resolved
        entry = find_entry(parsed, index, table, key, value, position)
        if entry is not None and entry not in found:
            found.append(entry)

    if not found:
        return None
    if len(found) > 1:
        _debugf(
            "%r matches %d different entries from %s:%d",
            value, len(found), parsed.path, line,
        )
        return None
    return parsed.position(found[0])


def _is_lookup_call(index: BindingIndex, call: ast.Call) -> bool:
    func = call.func
    if isinstance(func, ast.Attribute) and isinstance(func.value, ast.Name):
        if func.attr not in LOOKUP_FUNCTIONS:
            return False
        return index.resolve(func.value) in index.module_aliases
    if isinstance(func, ast.Name):
        return index.resolve(func) in index.function_aliases
    return False


def _selector_key(node: ast.expr) -> Tuple[Optional[str], Optional[int]]:
    if isinstance(node, ast.Attribute):
        return node.attr, None
    if isinstance(node, ast.Subscript) and isinstance(node.slice, ast.Constant):
        key = node.slice.value
        if isinstance(key, str):
            return key, None
        if isinstance(key, int) and not isinstance(key, bool):
            return None, key
    return None, None


def _argument_table(
    index: BindingIndex,
    argument: ast.expr,
    line: int,
) -> Optional[Tuple[ast.expr, Optional[str], Optional[int]]]:
    """
    Trace a lookup argument to (table literal, field key, field position).
    """
    if isinstance(argument, (ast.Attribute, ast.Subscript)) and isinstance(argument.value, ast.Name):
        # dataloc.L(tc.name): tc ranges over the table
        key, position = _selector_key(argument)
        if key is None and position is None:
            return None
        source = index.range_source(index.range_values, index.resolve(argument.value), line)
        if source is None:
            return None
        table = _table_literal(index, source.collection)
        if table is None:
            return None
        return table, key, position

    if isinstance(argument, ast.Name):
        # dataloc.L(name): name is the key variable, or one slot of an unpacked entry
        binding = index.resolve(argument)
        position = None
        source = index.range_source(index.range_keys, binding, line)
        if source is None:
            source = index.range_source(index.range_elements, binding, line)
            if source is None:
                return None
            position = source.position
        table = _table_literal(index, source.collection)
        if table is None:
            return None
        return table, argument.id, position

    return None


def _table_literal(index: BindingIndex, expr: ast.expr, depth: int = 0) -> Optional[ast.expr]:
    if depth > _MAX_ALIAS_DEPTH:
        return None
    if isinstance(expr, (ast.List, ast.Tuple, ast.Set, ast.Dict)):
        return expr

    if isinstance(expr, ast.Call):
        if _is_view_call(expr):
            return _table_literal(index, expr.func.value, depth + 1)  # type: ignore[attr-defined]
        func = expr.func
        if (
            isinstance(func, ast.Name)
            and func.id in _PASSTHROUGH_BUILTINS
            and expr.args
            and index.resolve(func) is None
        ):
            return _table_literal(index, expr.args[0], depth + 1)
        _debugf("table built by a call at line %d is not supported", expr.lineno)
        return None

    if isinstance(expr, ast.Name):
        binding = index.resolve(expr)
    elif isinstance(expr, ast.Attribute):
        binding = index.member(expr)
    else:
        binding = None
    if binding is None:
        _debugf("could not resolve table expression at line %d", expr.lineno)
        return None

    initializer = index.var_inits.get(binding)
    if initializer is None:
        return None
    return _table_literal(index, initializer, depth + 1)


def _entry_field_lists(index: BindingIndex, table: ast.expr) -> Optional[Dict[ast.AST, List[FieldGroup]]]:
    """
    Field lists of the record types a sequence table's entries construct.
    None (after logging) when an entry calls something bound in the file that
    is not a record type. Unbound callees (dict, imported factories) are
    absent: such entries only match by keyword.
    """
    field_lists: Dict[ast.AST, List[FieldGroup]] = {}
    for entry in getattr(table, "elts", []):
        if not isinstance(entry, ast.Call) or not isinstance(entry.func, ast.Name):
            continue
        binding = index.resolve(entry.func)
        if binding is None:
            continue
        fields = index.fields_of(binding)
        if fields is None:
            _logf("could not resolve type of %s", entry.func.id)
            return None
        field_lists[entry] = fields
    return field_lists


def entry_field(
    entry: ast.expr,
    key: Optional[str],
    position: Optional[int] = None,
    fields: Optional[List[FieldGroup]] = None,
) -> Optional[ast.expr]:
    """
    The expression holding field `key` (or the field at `position`) of one
    sequence-table entry.
    """
    if isinstance(entry, ast.Call):
        names = set()
        if key is not None:
            names.add(key)
        if position is not None:
            positional_name = _field_name_at(fields, position)
            if positional_name is not None:
                names.add(positional_name)
        for keyword in entry.keywords:
            if keyword.arg is not None and keyword.arg in names:
                return keyword.value

        if position is None and key is not None:
            position = struct_field_index(fields, key)
        return _positional(entry.args, position)

    if isinstance(entry, ast.Dict):
        if key is None:
            return None
        for item_key, item_value in zip(entry.keys, entry.values):
            if isinstance(item_key, ast.Constant) and item_key.value == key:
                return item_value
        return None

    if isinstance(entry, (ast.Tuple, ast.List)):
        return _positional(entry.elts, position)

    if position is None and isinstance(entry, ast.Constant):
        # for name in ["a", "b"]
        return entry
    return None


def _positional(items: List[ast.expr], position: Optional[int]) -> Optional[ast.expr]:
    if position is None or not 0 <= position < len(items):
        return None
    if any(isinstance(item, ast.Starred) for item in items[:position + 1]):
        return None
    return items[position]


def find_entry(
    parsed: ParsedFile,
    index: BindingIndex,
    table: ast.expr,
    key: Optional[str],
    value: str,
    position: Optional[int] = None,
) -> Optional[ast.AST]:
    """
    First entry of `table` whose `key` field is the string literal `value`.
    Mapping tables compare their keys and return the key node.
    """
    if isinstance(table, ast.Dict):
        for entry_key in table.keys:
            if entry_key is not None and is_string_literal(parsed, entry_key, value):
                return entry_key
        return None

    if not isinstance(table, (ast.List, ast.Tuple, ast.Set)):
        _debugf("unexpected table type: %s", type(table).__name__)
        return None

    field_lists = _entry_field_lists(index, table)
    if field_lists is None:
        return None

    for entry in table.elts:
        node = entry_field(entry, key, position, field_lists.get(entry))
        if is_string_literal(parsed, node, value):
            return entry
    return None


# ============================================================
# ===================== TABLE SCANNER ========================
# ============================================================

@dataclass
class CaseEntry:
    key: Optional[str]  # None when the key is not a plain string literal
    line: int


@dataclass
class CaseTable:
    path: str
    call_line: int
    argument: str
    kind: Literal["sequence", "mapping"]
    table_line: int
    entries: List[CaseEntry] = field(default_factory=list)


def scan_tables(path: str) -> List[CaseTable]:
    """
    Every lookup call in a file together with the table it resolves to.
    Calls whose argument cannot be traced are left out.
    """
    parsed = parse_source(path)
    index = build_binding_index(parsed)

    tables: List[CaseTable] = []
    for node in ast.walk(parsed.tree):
        if not isinstance(node, ast.Call) or not node.args or not _is_lookup_call(index, node):
            continue
        resolved = _argument_table(index, node.args[0], node.lineno)
        if resolved is None:
            continue
        table, key, position = resolved
        tables.append(_describe_table(parsed, index, node, table, key, position))

    tables.sort(key=lambda table: table.call_line)
    return tables


def _literal_text(node: Optional[ast.AST]) -> Optional[str]:
    if _is_str_constant(node):
        return node.value  # type: ignore[union-attr]
    return None


def _describe_table(
    parsed: ParsedFile,
    index: BindingIndex,
    call: ast.Call,
    table: ast.expr,
    key: Optional[str],
    position: Optional[int],
) -> CaseTable:
    description = CaseTable(
        path=parsed.path,
        call_line=call.lineno,
        argument=ast.unparse(call.args[0]),
        kind="mapping" if isinstance(table, ast.Dict) else "sequence",
        table_line=table.lineno,
    )
    if isinstance(table, ast.Dict):
        for entry_key in table.keys:
            if entry_key is not None:
                description.entries.append(CaseEntry(_literal_text(entry_key), entry_key.lineno))
        return description

    field_lists = _entry_field_lists(index, table) or {}
    for entry in getattr(table, "elts", []):
        node = entry_field(entry, key, position, field_lists.get(entry))
        description.entries.append(CaseEntry(_literal_text(node), entry.lineno))
    return description


# ============================================================
# =================== PUBLIC ENTRY POINTS ====================
# ============================================================

def resolve(path: str, line: int, key: str) -> Optional[SourcePosition]:
    """
    Position of the entry keyed `key` in the table used by the lookup at
    `path:line`. Parse and read errors propagate; misses return None.
    """
    parsed = parse_source(path)
    index = build_binding_index(parsed)
    return match_site(parsed, index, line, key)


def locate_at(path: str, line: int, key: str) -> str:
    """Like `resolve`, for callers that know their own location. Never raises."""
    try:
        position = resolve(path, line, key)
    except Exception as exc:
        _debugf("could not locate %r from %s:%d: %s", key, path, line, exc)
        return UNKNOWN
    return str(position) if position is not None else UNKNOWN


def _locate(value: str, step: int) -> str:
    try:
        path, line = caller_location(step)
        position = resolve(path, line, value)
    except Exception as exc:
        _debugf("could not locate %r: %s", value, exc)
        return UNKNOWN
    return str(position) if position is not None else UNKNOWN


def locate(key: str, stack_depth: int = 2) -> str:
    """
    "path:line" of the test case named `key`, or "unknown".

    `stack_depth` 2 resolves the line that called `locate`; each helper layer
    between the test loop and this call adds one.
    """
    return _locate(key, stack_depth)


def L(name: str) -> str:
    """
    Source location of the test case identified by `name`, for use directly
    inside the loop over the test table:

        for tc in cases:
            self.assertEqual(got, tc.want, dataloc.L(tc.name))
    """
    return _locate(name, 2)


def L3(name: str) -> str:
    return _locate(name, 3)


def L4(name: str) -> str:
    return _locate(name, 4)


def L5(name: str) -> str:
    return _locate(name, 5)


def L6(name: str) -> str:
    return _locate(name, 6)


# ============================================================
# ==================== REPORT OUTPUT =========================
# ============================================================

def table_to_obj(table: CaseTable) -> Dict[str, Any]:
    return asdict(table)


def emit_tables(tables: List[CaseTable], fmt: str = "json", out: Optional[str] = None) -> None:
    """
    Serialize scanned tables as JSON or YAML (list of table objects).
    """
    payload = [table_to_obj(table) for table in tables]
    if fmt == "yaml":
        text = yaml.safe_dump(payload, sort_keys=False)
    else:
        text = json.dumps(payload, indent=2, sort_keys=False) + "\n"
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(text)
    else:
        sys.stdout.write(text)


# ============================================================
# ============================ CLI ===========================
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.
      dataloc locate tests/test_parser.py 42 empty-input
      dataloc scan --format yaml tests/test_parser.py
    """
    global DEBUG

    parser = argparse.ArgumentParser(
        prog="dataloc",
        description="dataloc: source locations of table-driven test cases"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Write debug diagnostics to stderr (same as DATALOC_DEBUG=1).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    locate_p = subparsers.add_parser(
        "locate",
        help="Resolve the test case keyed KEY for the lookup call at FILE:LINE."
    )
    locate_p.add_argument("file", help="Python test file.")
    locate_p.add_argument("line", type=int, help="Line of the lookup call.")
    locate_p.add_argument("key", help="Key of the test case.")

    scan_p = subparsers.add_parser(
        "scan",
        help="List the test tables reached by lookup calls in one or more files."
    )
    scan_p.add_argument(
        "--format",
        choices=("json", "yaml"),
        default="json",
        help="Output format (default: json).",
    )
    scan_p.add_argument(
        "--out",
        metavar="OUT_FILE",
        help="Write the report to this file instead of stdout.",
        required=False,
    )
    scan_p.add_argument(
        "files",
        nargs="+",
        help="Python test files to scan."
    )

    args = parser.parse_args(argv)
    if args.debug:
        DEBUG = True

    if args.command == "locate":
        location = locate_at(args.file, args.line, args.key)
        print(location)
        return 0 if location != UNKNOWN else 1

    if args.command == "scan":
        tables: List[CaseTable] = []
        for path in args.files:
            try:
                tables.extend(scan_tables(path))
            except FileNotFoundError:
                sys.stderr.write(f"[dataloc] File not found: {path}\n")
            except (OSError, ParseError) as exc:
                sys.stderr.write(f"[dataloc] Could not scan {path}: {exc}\n")
        emit_tables(tables, fmt=args.format, out=args.out)
        return 0

    # unreachable if parser is correct
    return 1


if __name__ == "__main__":
    sys.exit(main())
