"""Restricted formula compiler and evaluator.

Formulas are small Python snippets stored in the catalogs. They are parsed
with :mod:`ast`, checked against a closed grammar and then interpreted node by
node; nothing is ever handed to ``eval``/``exec``. Three shapes are accepted::

    data['temperature:outTemp'] - 273.15
    lambda d, lat=%latitude%: d['temperature:outTemp'] - 273.15
    t = data['temperature:outTemp']
    if t > 300:
        return None
    return t - 273.15

``val = lambda d: ...`` is accepted as the lambda form.
"""

from __future__ import annotations

import ast
import math
import operator
import textwrap
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

from models.records import StationConstants
from services.errors import FormulaParseError, FormulaRuntimeError
from services.formula_library import CONSTANTS, FUNCTIONS

DEFAULT_RECORD_NAME = "data"
PLACEHOLDERS = ("%longitude%", "%latitude%", "%altitude%")

_MAX_ITERATIONS = 100_000
# Larger arithmetic results raise FormulaRuntimeError.
_MAX_INT_BITS = 1024
_MAX_SEQUENCE_LENGTH = 100_000
_DATETIME_ATTRIBUTES = frozenset({"year", "month", "day", "hour", "minute", "second"})

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: FUNCTIONS["pow"],
}
_UNARY_OPERATORS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
}
_COMPARISONS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_ALLOWED_NODES = (
    ast.Module,
    ast.Expression,
    ast.Expr,
    ast.Assign,
    ast.AugAssign,
    ast.If,
    ast.For,
    ast.Return,
    ast.Pass,
    ast.Break,
    ast.Continue,
    ast.BinOp,
    ast.UnaryOp,
    ast.BoolOp,
    ast.Compare,
    ast.IfExp,
    ast.Call,
    ast.keyword,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Store,
    ast.Subscript,
    ast.Slice,
    ast.Attribute,
    ast.List,
    ast.Tuple,
    ast.Dict,
    ast.ListComp,
    ast.GeneratorExp,
    ast.comprehension,
    ast.And,
    ast.Or,
    *_BINARY_OPERATORS,
    *_UNARY_OPERATORS,
    *_COMPARISONS,
)
_ALLOWED_CONSTANTS = (int, float, str, bool, type(None))


class _Return(Exception):
    def __init__(self, value: Any) -> None:
        super().__init__()
        self.value = value


class _Break(Exception):
    pass


class _Continue(Exception):
    pass


@dataclass(frozen=True)
class CompiledFormula:
    """A validated formula ready to be applied to records."""

    source: str
    tree: ast.AST
    record_name: Optional[str]
    parameters: Tuple[Tuple[str, ast.expr], ...] = ()
    expression: Optional[ast.expr] = None
    body: Tuple[ast.stmt, ...] = ()

    def __call__(self, record: Any, bindings: Optional[Mapping[str, Any]] = None) -> Any:
        return _Evaluation(self).run(record, bindings)


def substitute_constants(source: str, constants: Optional[StationConstants]) -> str:
    """Replace station placeholders; ``0.0`` stands in when no station is known."""
    values = constants.placeholders() if constants else dict.fromkeys(PLACEHOLDERS, 0.0)
    for token, value in values.items():
        source = source.replace(token, f"({float(value)!r})")
    return source


def _parse(text: str) -> ast.AST:
    try:
        return ast.parse(text, mode="eval")
    except SyntaxError:
        pass
    try:
        return ast.parse(text, mode="exec")
    except SyntaxError as exc:
        first_error = exc
    # Some interpreters refuse a bare ``return`` at module level.
    wrapped = "def _formula():\n" + textwrap.indent(text, "    ")
    try:
        function = ast.parse(wrapped, mode="exec").body[0]
    except SyntaxError:
        raise FormulaParseError(
            f"Invalid formula syntax: {first_error.msg}", line=first_error.lineno
        ) from first_error
    return ast.Module(body=function.body, type_ignores=[])


class _Validator(ast.NodeVisitor):

    def generic_visit(self, node: ast.AST) -> None:
        if not isinstance(node, _ALLOWED_NODES):
            raise FormulaParseError(
                f"Unsupported construct {type(node).__name__!r}",
                line=getattr(node, "lineno", None),
            )
        super().generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("_"):
            raise FormulaParseError(f"Name {node.id!r} is not allowed", line=node.lineno)
        if isinstance(node.ctx, ast.Store) and (node.id in FUNCTIONS or node.id in CONSTANTS):
            raise FormulaParseError(f"Cannot assign to builtin {node.id!r}", line=node.lineno)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            raise FormulaParseError(f"Attribute {node.attr!r} is not allowed", line=node.lineno)
        if not isinstance(node.ctx, ast.Load):
            raise FormulaParseError("Attributes are read-only", line=node.lineno)
        self.generic_visit(node)

    def visit_Constant(self, node: ast.Constant) -> None:
        if not isinstance(node.value, _ALLOWED_CONSTANTS):
            raise FormulaParseError(
                f"Literal of type {type(node.value).__name__!r} is not allowed", line=node.lineno
            )

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            name = node.func.id if isinstance(node.func, ast.Name) else ast.unparse(node.func)
            raise FormulaParseError(f"Unknown function {name!r}", line=node.lineno)
        for argument in node.args:
            if isinstance(argument, ast.Starred):
                raise FormulaParseError("Starred arguments are not allowed", line=node.lineno)
            self.visit(argument)
        for keyword in node.keywords:
            if keyword.arg is None:
                raise FormulaParseError("Keyword unpacking is not allowed", line=node.lineno)
            self.visit(keyword.value)

    def visit_Assign(self, node: ast.Assign) -> None:
        if len(node.targets) != 1 or not isinstance(node.targets[0], ast.Name):
            raise FormulaParseError("Only simple name assignments are allowed", line=node.lineno)
        self.generic_visit(node)

    def visit_AugAssign(self, node: ast.AugAssign) -> None:
        if not isinstance(node.target, ast.Name):
            raise FormulaParseError("Only simple name assignments are allowed", line=node.lineno)
        self.generic_visit(node)

    def visit_For(self, node: ast.For) -> None:
        if not isinstance(node.target, ast.Name) or node.orelse:
            raise FormulaParseError("Only 'for name in ...' loops are allowed", line=node.lineno)
        self.generic_visit(node)

    def visit_comprehension(self, node: ast.comprehension) -> None:
        if node.is_async or not isinstance(node.target, ast.Name):
            raise FormulaParseError("Only 'for name in ...' comprehensions are allowed")
        self.generic_visit(node)


def _lambda_formula(source: str, tree: ast.AST, node: ast.Lambda) -> CompiledFormula:
    arguments = node.args
    if arguments.vararg or arguments.kwarg or arguments.kwonlyargs:
        raise FormulaParseError("Formula parameters must be plain names", line=node.lineno)
    names = [arg.arg for arg in (*arguments.posonlyargs, *arguments.args)]
    defaults = list(arguments.defaults)
    if len(defaults) < len(names) - 1:
        raise FormulaParseError(
            "Every parameter after the record needs a default value", line=node.lineno
        )

    validator = _Validator()
    for name in names:
        if name.startswith("_"):
            raise FormulaParseError(f"Name {name!r} is not allowed", line=node.lineno)
    for default in defaults:
        validator.visit(default)
    validator.visit(node.body)

    record_name = names[0] if names else None
    offset = len(names) - len(defaults)
    parameters = tuple(
        (name, defaults[index - offset]) for index, name in enumerate(names) if index >= max(offset, 1)
    )
    return CompiledFormula(
        source=source,
        tree=tree,
        record_name=record_name,
        parameters=parameters,
        expression=node.body,
    )


@lru_cache(maxsize=512)
def compile_formula(source: str) -> CompiledFormula:
    """Parse and validate ``source`` (placeholders already substituted)."""
    text = textwrap.dedent(source).strip()
    if not text:
        raise FormulaParseError("Formula is empty.")

    tree = _parse(text)

    if isinstance(tree, ast.Expression):
        if isinstance(tree.body, ast.Lambda):
            return _lambda_formula(source, tree, tree.body)
        _Validator().visit(tree)
        return CompiledFormula(
            source=source, tree=tree, record_name=DEFAULT_RECORD_NAME, expression=tree.body
        )

    assert isinstance(tree, ast.Module)
    if len(tree.body) == 1:
        statement = tree.body[0]
        if isinstance(statement, (ast.Expr, ast.Assign)) and isinstance(statement.value, ast.Lambda):
            if isinstance(statement, ast.Assign) and (
                len(statement.targets) != 1 or not isinstance(statement.targets[0], ast.Name)
            ):
                raise FormulaParseError("Only simple name assignments are allowed", line=statement.lineno)
            return _lambda_formula(source, tree, statement.value)

    _Validator().visit(tree)
    return CompiledFormula(
        source=source, tree=tree, record_name=DEFAULT_RECORD_NAME, body=tuple(tree.body)
    )


def _bounded(value: Any) -> Any:
    """Reject arithmetic results that grow past what a formula can use."""
    if isinstance(value, int) and not isinstance(value, bool) and value.bit_length() > _MAX_INT_BITS:
        raise FormulaRuntimeError("Integer result is too large.")
    if isinstance(value, (str, list, tuple)) and len(value) > _MAX_SEQUENCE_LENGTH:
        raise FormulaRuntimeError("Sequence result is too long.")
    return value


class _Evaluation:
    """Interprets one :class:`CompiledFormula` against one record."""

    def __init__(self, formula: CompiledFormula) -> None:
        self.formula = formula
        self.iterations = 0

    def run(self, record: Any, bindings: Optional[Mapping[str, Any]] = None) -> Any:
        scope: Dict[str, Any] = dict(bindings or {})
        if self.formula.record_name is not None:
            scope[self.formula.record_name] = record
        try:
            for name, default in self.formula.parameters:
                if name not in scope:
                    scope[name] = self.value_of(default, scope)
            if self.formula.expression is not None:
                return self.value_of(self.formula.expression, scope)
            return self.exec_block(self.formula.body, scope)
        except _Return as result:
            return result.value
        except FormulaRuntimeError:
            raise
        except (_Break, _Continue) as exc:
            raise FormulaRuntimeError("'break'/'continue' outside of a loop") from exc
        except Exception as exc:
            raise FormulaRuntimeError(f"{type(exc).__name__}: {exc}") from exc

    def _tick(self) -> None:
        self.iterations += 1
        if self.iterations > _MAX_ITERATIONS:
            raise FormulaRuntimeError("Formula exceeded the iteration limit.")

    # statements

    def exec_block(self, statements: Tuple[ast.stmt, ...] | List[ast.stmt], scope: Dict[str, Any]) -> Any:
        last_value = None
        for statement in statements:
            last_value = self.run_statement(statement, scope)
        return last_value

    def run_statement(self, node: ast.stmt, scope: Dict[str, Any]) -> Any:
        if isinstance(node, ast.Expr):
            return self.value_of(node.value, scope)
        if isinstance(node, ast.Assign):
            scope[node.targets[0].id] = self.value_of(node.value, scope)  # type: ignore[attr-defined]
            return None
        if isinstance(node, ast.AugAssign):
            name = node.target.id  # type: ignore[attr-defined]
            if name not in scope:
                raise NameError(f"name {name!r} is not defined")
            scope[name] = self._binary(node.op, scope[name], self.value_of(node.value, scope))
            return None
        if isinstance(node, ast.If):
            branch = node.body if self.value_of(node.test, scope) else node.orelse
            return self.exec_block(branch, scope)
        if isinstance(node, ast.For):
            for item in self.value_of(node.iter, scope):
                self._tick()
                scope[node.target.id] = item  # type: ignore[attr-defined]
                try:
                    self.exec_block(node.body, scope)
                except _Continue:
                    continue
                except _Break:
                    break
            return None
        if isinstance(node, ast.Return):
            raise _Return(self.value_of(node.value, scope) if node.value is not None else None)
        if isinstance(node, ast.Break):
            raise _Break()
        if isinstance(node, ast.Continue):
            raise _Continue()
        return None

    # expressions

    def value_of(self, node: ast.expr, scope: Dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            return self._lookup(node.id, scope)
        if isinstance(node, ast.BinOp):
            return self._binary(node.op, self.value_of(node.left, scope), self.value_of(node.right, scope))
        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPERATORS[type(node.op)](self.value_of(node.operand, scope))
        if isinstance(node, ast.BoolOp):
            return self._boolean(node, scope)
        if isinstance(node, ast.Compare):
            return self._compare(node, scope)
        if isinstance(node, ast.IfExp):
            branch = node.body if self.value_of(node.test, scope) else node.orelse
            return self.value_of(branch, scope)
        if isinstance(node, ast.Call):
            function = FUNCTIONS[node.func.id]  # type: ignore[attr-defined]
            args = [self.value_of(argument, scope) for argument in node.args]
            kwargs = {keyword.arg: self.value_of(keyword.value, scope) for keyword in node.keywords}
            return function(*args, **kwargs)
        if isinstance(node, ast.Subscript):
            return self._subscript(node, scope)
        if isinstance(node, ast.Attribute):
            return self._attribute(self.value_of(node.value, scope), node.attr)
        if isinstance(node, ast.List):
            return [self.value_of(item, scope) for item in node.elts]
        if isinstance(node, ast.Tuple):
            return tuple(self.value_of(item, scope) for item in node.elts)
        if isinstance(node, ast.Dict):
            if any(key is None for key in node.keys):
                raise FormulaRuntimeError("Dict unpacking is not allowed.")
            return {
                self.value_of(key, scope): self.value_of(value, scope)  # type: ignore[arg-type]
                for key, value in zip(node.keys, node.values)
            }
        if isinstance(node, (ast.ListComp, ast.GeneratorExp)):
            results: List[Any] = []
            self._comprehension(node.generators, 0, node.elt, dict(scope), results)
            return results
        raise FormulaRuntimeError(f"Cannot evaluate {type(node).__name__}.")

    def _lookup(self, name: str, scope: Dict[str, Any]) -> Any:
        if name in scope:
            return scope[name]
        if name in CONSTANTS:
            return CONSTANTS[name]
        raise NameError(f"name {name!r} is not defined")

    def _binary(self, op: ast.operator, left: Any, right: Any) -> Any:
        if isinstance(op, ast.Mult) and (
            isinstance(left, (str, list, tuple)) or isinstance(right, (str, list, tuple))
        ):
            raise FormulaRuntimeError("Sequence repetition is not allowed.")
        if isinstance(op, ast.Mod) and isinstance(left, str):
            raise FormulaRuntimeError("String formatting is not allowed.")
        return _bounded(_BINARY_OPERATORS[type(op)](left, right))

    def _boolean(self, node: ast.BoolOp, scope: Dict[str, Any]) -> Any:
        value: Any = None
        for operand in node.values:
            value = self.value_of(operand, scope)
            if isinstance(node.op, ast.And) and not value:
                return value
            if isinstance(node.op, ast.Or) and value:
                return value
        return value

    def _compare(self, node: ast.Compare, scope: Dict[str, Any]) -> bool:
        left = self.value_of(node.left, scope)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.value_of(comparator, scope)
            if not _COMPARISONS[type(op)](left, right):
                return False
            left = right
        return True

    def _subscript(self, node: ast.Subscript, scope: Dict[str, Any]) -> Any:
        container = self.value_of(node.value, scope)
        if isinstance(node.slice, ast.Slice):
            index: Any = slice(
                self.value_of(node.slice.lower, scope) if node.slice.lower else None,
                self.value_of(node.slice.upper, scope) if node.slice.upper else None,
                self.value_of(node.slice.step, scope) if node.slice.step else None,
            )
        else:
            index = self.value_of(node.slice, scope)
        if not isinstance(container, (Mapping, list, tuple, str)):
            raise FormulaRuntimeError(f"Cannot index a {type(container).__name__}.")
        return container[index]

    @staticmethod
    def _attribute(target: Any, name: str) -> Any:
        if isinstance(target, Mapping):
            return target[name]
        if isinstance(target, (datetime, date)) and name in _DATETIME_ATTRIBUTES:
            return getattr(target, name)
        raise FormulaRuntimeError(f"Attribute {name!r} is not readable on {type(target).__name__}.")

    def _comprehension(
        self,
        generators: List[ast.comprehension],
        position: int,
        element: ast.expr,
        scope: Dict[str, Any],
        results: List[Any],
    ) -> None:
        if position == len(generators):
            results.append(self.value_of(element, scope))
            return
        generator = generators[position]
        for item in self.value_of(generator.iter, scope):
            self._tick()
            scope[generator.target.id] = item  # type: ignore[attr-defined]
            if all(self.value_of(condition, scope) for condition in generator.ifs):
                self._comprehension(generators, position + 1, element, scope, results)


def to_scalar(value: Any) -> Optional[float]:
    """Reduce a formula result to a plottable float, ``None`` when impossible.

    Angle objects such as the one returned by ``solar_position`` are reduced
    to their altitude in degrees.
    """
    if isinstance(value, (bool, int, float)):
        try:
            return float(value)
        except OverflowError:
            return None
    if isinstance(value, Mapping):
        if "value" in value:
            return to_scalar(value["value"])
        if "altitude" in value and isinstance(value["altitude"], (int, float)):
            return math.degrees(float(value["altitude"]))
    return None


class FormulaEvaluator:
    """Binds records and station constants to stored formulas.

    The evaluator itself is stateless; compiled formulas are memoized by
    source text in :func:`compile_formula`. ``bindings`` expose extra names
    to the formula (model-style probes receive ``forecast`` and their
    parameters this way) and override lambda parameter defaults.
    """

    def compile(self, source: str, constants: Optional[StationConstants] = None) -> CompiledFormula:
        return compile_formula(substitute_constants(source, constants))

    def evaluate(
        self,
        source: str,
        record: Any,
        constants: Optional[StationConstants] = None,
        bindings: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        return self.compile(source, constants)(record, bindings)

    def evaluate_scalar(
        self,
        source: str,
        record: Any,
        constants: Optional[StationConstants] = None,
        bindings: Optional[Mapping[str, Any]] = None,
    ) -> Optional[float]:
        """Evaluate and reduce; ``None`` for results that cannot be plotted."""
        return finite_or_none(to_scalar(self.evaluate(source, record, constants, bindings)))


def finite_or_none(value: Optional[float]) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return value
