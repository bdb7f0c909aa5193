"""Tests for workflow validation."""

import pytest

from dotprompt_runner.errors import ValidationError
from dotprompt_runner.workflow.parser import parse_document
from dotprompt_runner.workflow.validator import validate_document


def _codes(text, **kwargs):
    return validate_document(parse_document(text), **kwargs).codes()


def test_valid_workflow():
    """Test that a complete workflow has no errors and reports effective defaults."""
    text = """---
name: ok
model: m
input:
  default:
    x: a
  schema:
    x: {type: string, default: b}
---
Use {{x}}.
"""
    result = validate_document(parse_document(text))

    assert result.is_valid
    assert result.effective_defaults == {"x": "b"}
    assert result.codes() == ["CONFLICTING_DEFAULTS"]
    assert "schema default wins" in result.warnings[0].message


def test_header_requires_name_and_model():
    """Test that a header must name the workflow and its model."""
    codes = _codes("---\ndescription: nothing\n---\nBody\n")

    assert "MISSING_NAME" in codes
    assert "MISSING_MODEL" in codes


def test_headerless_workflow_needs_no_name():
    """Test that header-less documents skip identity checks."""
    result = validate_document(parse_document("Do {{thing}}\n"))

    assert result.is_valid
    assert result.codes() == ["MISSING_INPUT_SCHEMA"]


def test_generation_setting_ranges():
    """Test range checks on the config section."""
    text = """---
name: bad
model: m
config:
  temperature: 3
  topP: 1.5
  maxOutputTokens: 0
  topK: -1
  maxRetries: -2
  timeout: soon
---
Body
"""
    codes = _codes(text)

    for code in ("INVALID_TEMPERATURE", "INVALID_TOP_P", "INVALID_MAX_OUTPUT_TOKENS",
                 "INVALID_TOP_K", "INVALID_MAX_RETRIES", "INVALID_TIMEOUT"):
        assert code in codes


def test_parameter_warnings():
    """Test warnings for undeclared defaults, invalid defaults and undefined references."""
    text = """---
name: params
model: m
input:
  default:
    stray: 1
    same: s
  schema:
    same: {type: string, default: s}
    level: {type: string, enum: [low, high], default: mid}
    code: {type: string, pattern: "(unclosed"}
---
{{same}} {{level}} {{code}} {{unknown}}
"""
    result = validate_document(parse_document(text))
    codes = result.codes()

    assert "UNDECLARED_DEFAULT" in codes
    assert "REDUNDANT_DEFAULTS" in codes
    assert "INVALID_DEFAULT" in codes
    assert "UNDEFINED_PARAMETER" in codes
    assert [e.code for e in result.errors] == ["INVALID_PATTERN"]


def test_unknown_tools_are_warnings():
    """Test that tool names are only checked when a known set is given."""
    text = "---\nname: t\nmodel: m\ntools: [search, fly]\n---\nBody\n\n> Tool: dig\n"

    assert _codes(text) == []
    result = validate_document(parse_document(text), known_tools=["search"])
    assert result.is_valid
    assert [w.message for w in result.warnings] == ["Tool 'fly' is not registered", "Tool 'dig' is not registered"]


def test_sub_workflow_errors():
    """Test path, mode, duplicate and dependency checks."""
    text = """---
name: parent
model: m
runner.sub-workflows:
  - name: a
    path: ./a.prompt.md
    mode: borrow
  - name: a
    path: ./a2.prompt.md
  - name: b
    path: ""
    depends_on: [ghost]
---
Body
"""
    codes = _codes(text)

    assert "INVALID_INHERITANCE_MODE" in codes
    assert "DUPLICATE_SUBWORKFLOW" in codes
    assert "MISSING_SUBWORKFLOW_PATH" in codes
    assert "UNKNOWN_DEPENDENCY" in codes


def test_dependency_cycle():
    """Test that cyclic depends_on declarations are rejected."""
    text = """---
name: cyclic
model: m
runner.sub-workflows:
  - {name: a, path: ./a.prompt.md, depends_on: [c]}
  - {name: b, path: ./b.prompt.md, depends_on: [a]}
  - {name: c, path: ./c.prompt.md, depends_on: [b]}
  - {name: d, path: ./d.prompt.md}
---
Body
"""
    result = validate_document(parse_document(text))
    cycle = [e for e in result.errors if e.code == "DEPENDENCY_CYCLE"]

    assert len(cycle) == 1
    assert "a, b, c" in cycle[0].message


def test_group_ordering_warning():
    """Test that a dependency inside one parallel group is flagged."""
    text = """---
name: groups
model: m
runner.sub-workflows:
  - {name: a, path: ./a.prompt.md, parallel_group: g}
  - {name: b, path: ./b.prompt.md, parallel_group: g, depends_on: a}
---
Body
"""
    result = validate_document(parse_document(text))

    assert result.is_valid
    assert result.codes() == ["GROUP_ORDERING"]


def test_policy_errors():
    """Test checkpoint and error-handling checks."""
    text = """---
name: policies
model: m
runner.checkpoint:
  trigger: sometimes
  frequency: 0
runner.error-handling:
  retry_attempts: -1
  backoff_strategy: random
---
Body
"""
    codes = _codes(text)

    assert "INVALID_CHECKPOINT_TRIGGER" in codes
    assert "INVALID_CHECKPOINT_FREQUENCY" in codes
    assert "INVALID_RETRY_ATTEMPTS" in codes
    assert "INVALID_BACKOFF_STRATEGY" in codes


def test_raise_for_errors():
    """Test that errors can be raised as a ValidationError carrying every issue."""
    result = validate_document(parse_document("---\nname: x\n---\nBody\n"))

    with pytest.raises(ValidationError) as excinfo:
        result.raise_for_errors(workflow_id="wf-9")

    assert excinfo.value.workflow_id == "wf-9"
    assert [issue.code for issue in excinfo.value.issues] == ["MISSING_MODEL"]
