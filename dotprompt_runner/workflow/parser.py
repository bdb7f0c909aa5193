""" Load and parse workflow documents (*.prompt.md). """

import hashlib
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from ..errors import ParseError
from . import schema
from .models import (
    BodyContent,
    CheckpointPolicy,
    GenerationSettings,
    InputSpec,
    OutputSpec,
    ParameterSchema,
    RetryPolicy,
    SubWorkflowInvocation,
    WorkflowDocument,
    WorkflowExtensions,
)
from .resolver import compile_template, extract_references

logger = logging.getLogger(__name__)

WORKFLOW_SUFFIX = ".prompt.md"

FRONTMATTER_RE = re.compile(
    r"\A---[ \t]*\r?\n(?P<header>.*?)(?:^|\r?\n)---[ \t]*(?:\r?\n|\Z)(?P<body>.*)\Z",
    re.DOTALL | re.MULTILINE,
)
EXECUTE_RE = re.compile(r"^>\s*Execute:\s*(?P<path>.*?)\s*$", re.IGNORECASE)
DIRECTIVE_RE = re.compile(r"^>\s*(?P<key>Name|Mode|Depends on|Group|Parameters)\s*:\s*(?P<value>.*?)\s*$", re.IGNORECASE)
PARAM_RE = re.compile(r"^>\s*(?:-\s+|\s+)(?P<key>[\w.-]+)\s*:\s*(?P<value>.*?)\s*$")
TOOL_RE = re.compile(r"^>\s*Tool:\s*(?P<name>[\w.:-]+)\s*$", re.IGNORECASE)


def sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def load_document(path: Union[str, Path]) -> WorkflowDocument:
    """
    Load a WorkflowDocument from a *.prompt.md file.
    """
    path = Path(path)
    if not path.name.endswith(WORKFLOW_SUFFIX):
        raise ParseError(f"Workflow files must end with '{WORKFLOW_SUFFIX}'",
                         file_path=str(path), code="INVALID_EXTENSION")
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ParseError("Workflow file not found", file_path=str(path), code="FILE_NOT_FOUND") from None
    except UnicodeDecodeError as e:
        raise ParseError(f"Workflow file is not valid UTF-8: {e.reason} at byte {e.start}",
                         file_path=str(path), code="ENCODING") from e
    except OSError as e:
        raise ParseError(f"Cannot read workflow file: {e.strerror or e}",
                         file_path=str(path), code="READ_ERROR") from e
    return parse_document(text, file_path=str(path))


def parse_document(text: str, file_path: Optional[str] = None) -> WorkflowDocument:
    """
    Parse workflow text into a WorkflowDocument.

    A leading ``---`` line opens a YAML header that runs to the next ``---``
    line; without it the whole text is the body and the configuration is
    empty.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    if not text.strip():
        raise ParseError("Workflow content is empty", file_path=file_path, code="EMPTY_CONTENT")

    raw_header, body, body_offset = _split(text, file_path)
    has_header = raw_header is not None
    raw = _load_header(raw_header, file_path) if has_header else {}

    try:
        header = schema.validate_header(raw)
        extensions = _parse_extensions(raw)
    except ValueError as e:
        raise ParseError(str(e), file_path=file_path, code="HEADER_SCHEMA") from e

    compiled = compile_template(body, line_offset=body_offset, file_path=file_path)
    blocks, tool_refs = _scan_body(body, body_offset, file_path)

    document = WorkflowDocument(
        name=header.name,
        model=header.model,
        description=header.description or header.metadata.description or "",
        tools=list(header.tools),
        config=_generation_settings(header),
        input=_input_spec(header.input),
        output=OutputSpec(format=header.output.format, schema=dict(header.output.schema_)),
        metadata=dict(raw.get("metadata") or {}),
        extensions=extensions,
        body=BodyContent(
            text=body,
            parameter_references=extract_references(compiled),
            sub_workflow_references=blocks,
            tool_references=tool_refs,
        ),
        has_header=has_header,
        raw_header=raw_header or "",
        source_text=text,
        file_path=file_path,
        content_hash=sha256(text),
        header_hash=sha256(raw_header or ""),
        body_hash=sha256(body),
    )
    logger.debug("Parsed workflow %s (%d sub-workflows, %d references)",
                 document.display_name, len(document.invocations),
                 len(document.body.parameter_references))
    return document


def body_line_offset(document: WorkflowDocument) -> int:
    """Number of file lines that precede the body."""
    return document.source_text.count("\n") - document.body.text.count("\n")


def _split(text: str, file_path: Optional[str]) -> Tuple[Optional[str], str, int]:
    first_line = text.split("\n", 1)[0].rstrip("\r")
    if first_line.rstrip() != "---":
        return None, text, 0

    match = FRONTMATTER_RE.match(text)
    if not match:
        raise ParseError("Header opened with '---' is never closed", file_path=file_path,
                         line=1, column=1, code="UNTERMINATED_HEADER")
    body_start = match.start("body")
    return match.group("header"), match.group("body"), text.count("\n", 0, body_start)


def _load_header(raw_header: str, file_path: Optional[str]) -> Dict[str, Any]:
    try:
        raw = yaml.safe_load(raw_header)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        problem = getattr(e, "problem", None) or str(e)
        # the header starts on line 2 of the file
        line = mark.line + 2 if mark is not None else None
        column = mark.column + 1 if mark is not None else None
        raise ParseError(f"Invalid YAML header: {problem}", file_path=file_path,
                         line=line, column=column, code="YAML_SYNTAX") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ParseError("Workflow header must be a YAML mapping", file_path=file_path,
                         line=2, column=1, code="HEADER_NOT_MAPPING")
    return raw


def _generation_settings(header: schema.HeaderSpec) -> GenerationSettings:
    config = header.config
    return GenerationSettings(
        model=header.model,
        temperature=config.temperature,
        max_output_tokens=config.max_output_tokens,
        top_p=config.top_p,
        top_k=config.top_k,
        stop_sequences=list(config.stop_sequences),
        max_retries=config.max_retries,
        timeout=str(config.timeout) if config.timeout is not None else None,
    )


def _input_spec(section: schema.InputSection) -> InputSpec:
    entries: Dict[str, ParameterSchema] = {}
    for name, spec in (section.schema_ or {}).items():
        if spec is None:
            entries[name] = ParameterSchema(name=name)
        elif isinstance(spec, str):
            # shorthand: `param: string`
            entries[name] = ParameterSchema(name=name, type=spec)
        else:
            entries[name] = ParameterSchema(
                name=name,
                type=spec.type,
                description=spec.description,
                required=spec.required,
                default=spec.default,
                has_default="default" in spec.model_fields_set,
                enum=spec.enum,
                pattern=spec.pattern,
                min_length=spec.min_length,
                max_length=spec.max_length,
            )
    return InputSpec(
        defaults=dict(section.default),
        schema=entries,
        has_schema=section.schema_ is not None,
    )


def _parse_extensions(raw: Dict[str, Any]) -> WorkflowExtensions:
    extra = {key: value for key, value in raw.items() if key not in schema.KNOWN_KEYS}

    invocations = []
    for spec in schema.validate_sub_workflows(extra.get(schema.SUB_WORKFLOWS_KEY)):
        path = spec.path or ""
        invocations.append(SubWorkflowInvocation(
            name=spec.name or _stem(path),
            path=path,
            parameters=dict(spec.parameters),
            mode=spec.mode,
            depends_on=list(spec.depends_on),
            parallel_group=spec.parallel_group,
        ))

    checkpoint = schema.validate_checkpoint(extra.get(schema.CHECKPOINT_KEY))
    retry = schema.validate_error_handling(extra.get(schema.ERROR_HANDLING_KEY))
    return WorkflowExtensions(
        sub_workflows=invocations,
        checkpoint=CheckpointPolicy(
            enabled=checkpoint.enabled,
            trigger=checkpoint.trigger,
            frequency=checkpoint.frequency,
        ),
        retry=RetryPolicy(
            retry_attempts=retry.retry_attempts,
            backoff_strategy=retry.backoff_strategy,
            retry_delay_seconds=retry.retry_delay_seconds,
            timeout_seconds=retry.timeout_seconds,
        ),
        raw=extra,
    )


def _stem(path: str) -> str:
    return Path(path).name.split(".")[0] if path else ""


def _scan_body(body: str, body_offset: int, file_path: Optional[str]) -> Tuple[List[SubWorkflowInvocation], set]:
    """
    Find quoted sub-workflow blocks and tool references in the body:

        > Execute: ./child.prompt.md
        > Name: analysis
        > Mode: merge
        > Depends on: setup, fetch
        > Group: fetchers
        > Parameters:
        > - key: "value"

        > Tool: search
    """
    invocations: List[SubWorkflowInvocation] = []
    tools = set()
    current: Optional[SubWorkflowInvocation] = None
    in_params = False

    for index, line in enumerate(body.splitlines()):
        line = line.strip()
        lineno = body_offset + index + 1

        tool = TOOL_RE.match(line)
        if tool:
            tools.add(tool.group("name"))
            current, in_params = None, False
            continue

        execute = EXECUTE_RE.match(line)
        if execute:
            path = _strip_quotes(execute.group("path"))
            current = SubWorkflowInvocation(name=_stem(path), path=path, line=lineno)
            invocations.append(current)
            in_params = False
            continue

        if current is None:
            continue
        if not line.startswith(">"):
            current, in_params = None, False
            continue

        directive = DIRECTIVE_RE.match(line)
        if directive:
            key = directive.group("key").lower()
            value = _strip_quotes(directive.group("value"))
            in_params = key == "parameters"
            if key == "name" and value:
                current.name = value
            elif key == "mode":
                current.mode = value.lower()
            elif key == "depends on":
                current.depends_on = [v.strip() for v in value.split(",") if v.strip()]
            elif key == "group":
                current.parallel_group = value or None
            continue

        param = PARAM_RE.match(line)
        if in_params and param:
            current.parameters[param.group("key")] = _parse_value(param.group("value"))
        elif line.strip("> \t"):
            logger.warning("%s:%d: ignoring unrecognised line in sub-workflow block: %s",
                           file_path or "<content>", lineno, line)

    return invocations, tools


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _parse_value(value: str) -> Any:
    if "{{" in value:
        return _strip_quotes(value)
    try:
        return yaml.safe_load(value) if value else None
    except yaml.YAMLError:
        return value
