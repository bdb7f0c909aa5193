import ast
import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

logger = logging.getLogger(__name__)

_LITERALS = {"true": True, "false": False, "null": None, "none": None, "True": True, "False": False, "None": None}
_LOCAL_RE = re.compile(r"@([A-Za-z_]\w*)")
_NOT_RE = re.compile(r"!(?!=)")
_INDEX_RE = re.compile(r"\[(\d+)\]")
_STRING_RE = re.compile(r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")""")


class Undefined(Exception):
    """Raised by resolve_path when a path does not resolve."""


def resolve_path(scope: Mapping, path: str) -> Any:
    """
    Resolve a dotted path such as ``result.items.0.name`` (or ``items[0]``)
    against a scope.  Mappings are indexed by key, sequences by integer and
    anything else by attribute.
    """
    path = _INDEX_RE.sub(r".\1", path.strip())
    head, *rest = path.split(".")
    if head not in scope:
        raise Undefined(head)
    value = scope[head]
    for segment in rest:
        value = _step(value, segment, path)
    return value


def _step(value: Any, segment: str, path: str) -> Any:
    if isinstance(value, Mapping):
        if segment in value:
            return value[segment]
        raise Undefined(path)
    if isinstance(value, Sequence) and not isinstance(value, str) and segment.lstrip("-").isdigit():
        try:
            return value[int(segment)]
        except IndexError:
            raise Undefined(path) from None
    if not segment.startswith("_") and hasattr(value, segment):
        return getattr(value, segment)
    raise Undefined(path)


def normalize_condition(expression: str, local: str = r"__at_\1") -> str:
    """
    Rewrite ``&&``, ``||``, ``!`` and ``@`` locals into Python syntax.
    String literals are left untouched.
    """
    parts = _STRING_RE.split(expression)
    for i in range(0, len(parts), 2):
        part = parts[i].replace("&&", " and ").replace("||", " or ")
        part = _NOT_RE.sub(" not ", part)
        parts[i] = _LOCAL_RE.sub(local, part)
    return "".join(parts).strip()


def evaluate_condition(expression: str, context: Mapping) -> bool:
    """
    Evaluate a condition expression in the provided context.

    Names resolve against the context (dotted paths included); an undefined
    name evaluates to None, which is falsy.  ``&&``, ``||`` and ``!`` are
    accepted as aliases of ``and``, ``or`` and ``not``.
    """
    expression = expression.strip()
    if expression == "":
        return True

    expression = normalize_condition(expression)
    try:
        return bool(_safe_eval(expression, context))
    except (SyntaxError, ValueError, TypeError) as e:
        logger.debug("Condition %r evaluated to false: %s", expression, e)
        return False


def _lookup(name: str, context: Mapping) -> Any:
    if name.startswith("__at_"):
        name = "@" + name[len("__at_"):]
    if name in context:
        return context[name]
    if name in _LITERALS:
        return _LITERALS[name]
    return None


def _safe_eval(expression: str, context: Mapping) -> Any:
    node = ast.parse(expression, mode='eval')

    def _eval(node):
        if isinstance(node, ast.Expression):
            return _eval(node.body)

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                out = True
                for v in node.values:
                    out = _eval(v)
                    if not out:
                        return out
                return out
            out = False
            for v in node.values:
                out = _eval(v)
                if out:
                    return out
            return out

        if isinstance(node, ast.UnaryOp):
            if isinstance(node.op, ast.Not):
                return not _eval(node.operand)
            if isinstance(node.op, ast.USub):
                return -_eval(node.operand)
            raise ValueError(f"Unsupported operator: {node.op}")

        if isinstance(node, ast.Compare):
            left = _eval(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = _eval(comparator)
                if isinstance(op, ast.Eq):      ok = (left == right)
                elif isinstance(op, ast.NotEq): ok = (left != right)
                elif isinstance(op, ast.Lt):    ok = (left < right)
                elif isinstance(op, ast.LtE):   ok = (left <= right)
                elif isinstance(op, ast.Gt):    ok = (left > right)
                elif isinstance(op, ast.GtE):   ok = (left >= right)
                elif isinstance(op, ast.In):    ok = (left in right)
                elif isinstance(op, ast.NotIn): ok = (left not in right)
                else:
                    raise ValueError(f"Unsupported operator: {op}")
                if not ok:
                    return False
                left = right
            return True

        if isinstance(node, ast.Name):
            return _lookup(node.id, context)

        if isinstance(node, ast.Attribute):
            base = _eval(node.value)
            if base is None:
                return None
            try:
                return _step(base, node.attr, node.attr)
            except Undefined:
                return None

        if isinstance(node, ast.Subscript):
            base = _eval(node.value)
            key = _eval(node.slice)
            if base is None:
                return None
            try:
                return _step(base, str(key), str(key))
            except Undefined:
                return None

        if isinstance(node, (ast.List, ast.Tuple)):
            return [_eval(e) for e in node.elts]

        if isinstance(node, ast.Constant):
            return node.value
        raise ValueError("Unsupported expression")

    return _eval(node)
