"""Expression evaluation against the workflow context.

Conditional and switch nodes evaluate small JavaScript-style expressions
such as ``{{order.total}} > 100 && order.status == "paid"``. ``{{...}}``
wrappers are optional. Supported: literals (``true``, ``false``, ``null``,
numbers, strings, lists), context lookups with dots or brackets,
``== != < <= > >= in``, ``&& || !`` (``and or not`` also work) and
``+ - * / %`` on numbers (``+`` concatenates when either side is text).

Expressions are parsed with :mod:`ast` and only the node types above are
evaluated; calls, attribute access on Python objects and comprehensions
are rejected.
"""

import ast
import json
import operator
import re
from typing import Any

MAX_EXPRESSION_LENGTH = 1000

_WRAPPER = re.compile(r"\{\{([^}]+)\}\}")
_JS_TOKENS = re.compile(
    r"""("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')|(&&)|(\|\|)|(!)(?!=)|\b(true|false|null)\b"""
)
_LITERALS = {"true": "True", "false": "False", "null": "None"}

_ARITHMETIC = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.FloorDiv: operator.floordiv,
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
}


class ExpressionError(ValueError):
    """Expression could not be parsed or evaluated."""

    pass


def _translate_token(match: re.Match) -> str:
    literal, and_op, or_op, not_op, keyword = match.groups()
    if literal is not None:
        return literal
    if and_op:
        return " and "
    if or_op:
        return " or "
    if not_op:
        return " not "
    return _LITERALS[keyword]


def to_python_syntax(expression: str) -> str:
    """Strip ``{{...}}`` wrappers and map JavaScript operators to Python."""
    unwrapped = _WRAPPER.sub(lambda m: m.group(1), expression).strip()
    return _JS_TOKENS.sub(_translate_token, unwrapped).strip()


def as_text(value: Any) -> str:
    """Render a value the way JavaScript's ``String()`` would."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class _Evaluator:
    def __init__(self, context: dict[str, Any]) -> None:
        self._context = context

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
        return method(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        if not isinstance(node.value, (str, int, float, bool, type(None))):
            raise ExpressionError(f"Unsupported literal: {node.value!r}")
        return node.value

    def visit_List(self, node: ast.List) -> list[Any]:
        return [self.visit(element) for element in node.elts]

    visit_Tuple = visit_List

    def visit_Dict(self, node: ast.Dict) -> dict[Any, Any]:
        if any(key is None for key in node.keys):
            raise ExpressionError("Unsupported syntax: dict unpacking")
        return {self.visit(key): self.visit(value) for key, value in zip(node.keys, node.values)}

    def visit_Name(self, node: ast.Name) -> Any:
        return self._context.get(node.id)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        return self._member(self.visit(node.value), node.attr)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        if isinstance(node.slice, ast.Slice):
            raise ExpressionError("Unsupported syntax: slice")
        return self._member(self.visit(node.value), self.visit(node.slice))

    @staticmethod
    def _member(container: Any, key: Any) -> Any:
        if isinstance(container, dict):
            return container.get(key if isinstance(key, str) else as_text(key))
        if isinstance(container, list) and _is_number(key) and float(key).is_integer():
            index = int(key)
            return container[index] if 0 <= index < len(container) else None
        if isinstance(container, list) and key == "length":
            return len(container)
        if isinstance(container, str) and key == "length":
            return len(container)
        return None

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        value: Any = None
        for operand in node.values:
            value = self.visit(operand)
            if isinstance(node.op, ast.And) and not value:
                return value
            if isinstance(node.op, ast.Or) and value:
                return value
        return value

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, (ast.USub, ast.UAdd)) and _is_number(operand):
            return -operand if isinstance(node.op, ast.USub) else operand
        raise ExpressionError(f"Unsupported operand for {type(node.op).__name__}: {operand!r}")

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        op = _ARITHMETIC.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        left = self.visit(node.left)
        right = self.visit(node.right)

        if isinstance(node.op, ast.Add) and (isinstance(left, str) or isinstance(right, str)):
            return as_text(left) + as_text(right)
        if not (_is_number(left) and _is_number(right)):
            raise ExpressionError(
                f"Arithmetic needs numbers, got {as_text(left)} and {as_text(right)}"
            )
        try:
            return op(left, right)
        except ZeroDivisionError as e:
            raise ExpressionError("Division by zero") from e

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            try:
                passed = _COMPARISONS[type(op_node)](left, right)
            except TypeError:
                # mismatched or missing operands compare false
                passed = False
            except KeyError as e:
                raise ExpressionError(f"Unsupported comparison: {type(op_node).__name__}") from e
            if not passed:
                return False
            left = right
        return True


def evaluate_expression(expression: str, context: dict[str, Any]) -> Any:
    """Evaluate an expression against the context.

    Missing context paths evaluate to None (``null``).

    Raises:
        ExpressionError: On syntax errors or unsupported constructs
    """
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError(f"Expression longer than {MAX_EXPRESSION_LENGTH} characters")

    source = to_python_syntax(expression)
    if not source:
        raise ExpressionError("Expression is empty")

    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e.msg}") from e

    try:
        return _Evaluator(context).visit(tree)
    except RecursionError as e:
        raise ExpressionError("Expression is nested too deeply") from e
