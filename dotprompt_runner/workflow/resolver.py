"""
Variable resolver: renders a workflow body against a variable mapping.

Supported syntax:
    {{name}} / {{result.field}} / {{items.0}}      substitution
    {{#if expr}} ... {{else}} ... {{/if}}          conditional
    {{#unless expr}} ... {{/unless}}               negated conditional
    {{#each seq}} ... {{else}} ... {{/each}}       iteration (this, @index,
                                                   @first, @last, @key)
    {{! comment }}                                 dropped

Tags that are not a plain path (helpers such as {{role "system"}}) are left
in the output untouched.
"""

import ast
import functools
import json
import re
from collections import ChainMap
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

from ..errors import MissingVariableError, TemplateSyntaxError
from .guards import Undefined, evaluate_condition, normalize_condition, resolve_path

TAG_RE = re.compile(r"\{\{(\{)?\s*(?P<body>.*?)\s*(?(1)\})\}\}", re.DOTALL)
PATH_RE = re.compile(r"^@?[A-Za-z_][\w-]*(?:\.[\w-]+|\[\d+\])*$")
BLOCKS = ("if", "unless", "each")
LOCALS = ("this", "@index", "@first", "@last", "@key")
_KEYWORDS = {"and", "or", "not", "in", "is", "true", "false", "null", "none", "True", "False", "None", "this"}


@dataclass
class Text:
    text: str


@dataclass
class Var:
    path: str
    line: int


@dataclass
class Block:
    kind: str
    arg: str
    line: int
    children: List[Any] = field(default_factory=list)
    else_children: List[Any] = field(default_factory=list)
    in_else: bool = False


@dataclass
class CompiledTemplate:
    source: str
    nodes: List[Any]


def compile_template(text: str, line_offset: int = 0, file_path: Optional[str] = None) -> CompiledTemplate:
    """
    Parse template text into a node tree.  Raises TemplateSyntaxError for
    unbalanced or unknown blocks, with the 1-based line of the problem
    (shifted by ``line_offset``).
    """
    return _compile(text, line_offset, file_path)


@functools.lru_cache(maxsize=256)
def _compile(text: str, line_offset: int, file_path: Optional[str]) -> CompiledTemplate:
    root: List[Any] = []
    stack: List[Block] = []

    def target() -> List[Any]:
        if not stack:
            return root
        block = stack[-1]
        return block.else_children if block.in_else else block.children

    pos = 0
    for match in TAG_RE.finditer(text):
        if match.start() > pos:
            target().append(Text(text[pos:match.start()]))
        pos = match.end()
        line = text.count("\n", 0, match.start()) + 1 + line_offset
        body = match.group("body")

        if body.startswith("!"):
            continue

        if body.startswith("#"):
            kind, _, arg = body[1:].partition(" ")
            arg = arg.strip()
            if kind not in BLOCKS:
                raise TemplateSyntaxError(f"Unknown block '{{{{#{kind}}}}}'", line=line, file_path=file_path)
            if not arg:
                raise TemplateSyntaxError(f"Block '{{{{#{kind}}}}}' needs an argument", line=line, file_path=file_path)
            if kind == "each" and not PATH_RE.match(arg):
                raise TemplateSyntaxError(f"'{{{{#each}}}}' needs a variable path, got '{arg}'", line=line, file_path=file_path)
            block = Block(kind=kind, arg=arg, line=line)
            target().append(block)
            stack.append(block)
            continue

        if body.startswith("/"):
            kind = body[1:].strip()
            if not stack:
                raise TemplateSyntaxError(f"Unexpected '{{{{/{kind}}}}}' with no open block", line=line, file_path=file_path)
            if stack[-1].kind != kind:
                raise TemplateSyntaxError(
                    f"'{{{{/{kind}}}}}' closes '{{{{#{stack[-1].kind}}}}}' opened on line {stack[-1].line}",
                    line=line, file_path=file_path,
                )
            stack.pop()
            continue

        if body == "else":
            if not stack or stack[-1].in_else:
                raise TemplateSyntaxError("Unexpected '{{else}}'", line=line, file_path=file_path)
            stack[-1].in_else = True
            continue

        if PATH_RE.match(body) or body == "this":
            target().append(Var(path=body, line=line))
        else:
            target().append(Text(match.group(0)))

    if stack:
        block = stack[-1]
        raise TemplateSyntaxError(f"Unclosed '{{{{#{block.kind}}}}}'", line=block.line, file_path=file_path)

    if pos < len(text):
        root.append(Text(text[pos:]))
    return CompiledTemplate(source=text, nodes=root)


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def render(template: Union[str, CompiledTemplate], variables: Dict[str, Any],
           workflow_id: Optional[str] = None) -> str:
    """
    Render a template.  Never mutates ``variables``.  Raises
    MissingVariableError listing every unresolved reference at once.
    """
    compiled = compile_template(template) if isinstance(template, str) else template
    out: List[str] = []
    missing: List[str] = []
    _render(compiled.nodes, ChainMap({}, variables), out, missing)
    if missing:
        raise MissingVariableError(missing, workflow_id=workflow_id)
    return "".join(out)


def missing_variables(template: Union[str, CompiledTemplate], variables: Dict[str, Any]) -> List[str]:
    """Names that would be unresolved if the template were rendered now."""
    compiled = compile_template(template) if isinstance(template, str) else template
    missing: List[str] = []
    _render(compiled.nodes, ChainMap({}, variables), [], missing)
    return list(dict.fromkeys(missing))


def _render(nodes: List[Any], scope: ChainMap, out: List[str], missing: List[str]) -> None:
    for node in nodes:
        if isinstance(node, Text):
            out.append(node.text)
        elif isinstance(node, Var):
            try:
                out.append(format_value(resolve_path(scope, node.path)))
            except Undefined:
                missing.append(node.path)
        elif node.kind == "each":
            _render_each(node, scope, out, missing)
        else:
            truthy = evaluate_condition(node.arg, scope)
            if node.kind == "unless":
                truthy = not truthy
            _render(node.children if truthy else node.else_children, scope, out, missing)


def _render_each(node: Block, scope: ChainMap, out: List[str], missing: List[str]) -> None:
    try:
        seq = resolve_path(scope, node.arg)
    except Undefined:
        missing.append(node.arg)
        return

    if not seq:
        _render(node.else_children, scope, out, missing)
        return

    if isinstance(seq, Mapping):
        items = list(seq.items())
    elif isinstance(seq, (list, tuple)):
        items = list(enumerate(seq))
    else:
        raise TemplateSyntaxError(
            f"'{{{{#each {node.arg}}}}}' needs a list or mapping, got {type(seq).__name__}",
            line=node.line,
        )

    last = len(items) - 1
    for index, (key, item) in enumerate(items):
        local = {"this": item, "@index": index, "@first": index == 0, "@last": index == last}
        if isinstance(seq, Mapping):
            local["@key"] = key
        layers = [local, item] if isinstance(item, Mapping) else [local]
        _render(node.children, scope.new_child(ChainMap(*layers)), out, missing)


def extract_references(template: Union[str, CompiledTemplate]) -> Set[str]:
    """
    Root variable names referenced by substitutions and block arguments.
    ``this`` and ``@`` locals are excluded.
    """
    compiled = compile_template(template) if isinstance(template, str) else template
    names: Set[str] = set()
    _collect(compiled.nodes, names)
    return names


def _collect(nodes: List[Any], names: Set[str]) -> None:
    for node in nodes:
        if isinstance(node, Var):
            _add_root(node.path, names)
        elif isinstance(node, Block):
            if node.kind == "each":
                _add_root(node.arg, names)
            else:
                names.update(_condition_names(node.arg))
            _collect(node.children, names)
            _collect(node.else_children, names)


def _add_root(path: str, names: Set[str]) -> None:
    root = re.split(r"[.\[]", path, maxsplit=1)[0]
    if root and not root.startswith("@") and root not in LOCALS:
        names.add(root)


def _condition_names(expression: str) -> Set[str]:
    expression = normalize_condition(expression, local="0")
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError:
        return {w for w in re.findall(r"[A-Za-z_]\w*", expression) if w not in _KEYWORDS}
    return {n.id for n in ast.walk(tree) if isinstance(n, ast.Name) and n.id not in _KEYWORDS}
