"""Tests for workflow document parsing."""

import pytest

from dotprompt_runner.errors import ParseError, TemplateSyntaxError
from dotprompt_runner.workflow.parser import load_document, parse_document


def test_parse_document_with_header():
    """Test parsing a document with a full header."""
    text = """---
name: summarise
model: test-model
tools: [search, fetch]
config:
  temperature: 0.4
  maxOutputTokens: 512
  stopSequences: ["END"]
  timeout: 5m
input:
  default:
    topic: cats
  schema:
    topic:
      type: string
      description: What to summarise
metadata:
  author: me
  tags: [demo]
---
Summarise {{topic}}.
"""
    document = parse_document(text)

    assert document.has_header is True
    assert document.name == "summarise"
    assert document.model == "test-model"
    assert document.tools == ["search", "fetch"]
    assert document.config.temperature == 0.4
    assert document.config.max_output_tokens == 512
    assert document.config.stop_sequences == ["END"]
    assert document.config.timeout_seconds == 300
    assert document.input.defaults == {"topic": "cats"}
    assert document.input.schema["topic"].type == "string"
    assert document.metadata["author"] == "me"
    assert document.body.text == "Summarise {{topic}}.\n"
    assert document.body.parameter_references == {"topic"}
    assert len(document.content_hash) == 64
    assert document.content_hash != document.body_hash


def test_parse_headerless_document():
    """Test that a file without a header is all body with empty configuration."""
    text = "Just do the thing with {{item}}.\n"
    document = parse_document(text)

    assert document.has_header is False
    assert document.name is None
    assert document.model is None
    assert document.tools == []
    assert document.body.text == text
    assert document.body.parameter_references == {"item"}


def test_unknown_header_keys_are_preserved_in_order():
    """Test that unknown top-level keys land verbatim in the extensions map."""
    text = """---
name: ext
model: m
zeta: 1
vendor.option: {nested: [1, 2]}
alpha: text
---
Body
"""
    document = parse_document(text)

    assert list(document.extensions.raw) == ["zeta", "vendor.option", "alpha"]
    assert document.extensions.raw["vendor.option"] == {"nested": [1, 2]}


def test_runner_extensions_are_typed():
    """Test parsing of runner.sub-workflows, runner.checkpoint and runner.error-handling."""
    text = """---
name: parent
model: m
runner.sub-workflows:
  - name: setup
    path: ./setup.prompt.md
  - path: ./analyse.prompt.md
    mode: merge
    depends_on: setup
    parallel_group: workers
    parameters:
      depth: 2
runner.checkpoint:
  trigger: every_n_calls
  frequency: 3
runner.error-handling:
  retry_attempts: 2
  backoff_strategy: linear
  timeout_seconds: 10
---
Body
"""
    document = parse_document(text)
    setup, analyse = document.extensions.sub_workflows

    assert setup.name == "setup"
    assert setup.mode == "inherit"
    assert analyse.name == "analyse"
    assert analyse.mode == "merge"
    assert analyse.depends_on == ["setup"]
    assert analyse.parallel_group == "workers"
    assert analyse.parameters == {"depth": 2}
    assert document.extensions.checkpoint.trigger == "every_n_calls"
    assert document.extensions.checkpoint.frequency == 3
    assert document.extensions.retry.retry_attempts == 2
    assert document.extensions.retry.backoff_strategy == "linear"
    assert document.extensions.retry.timeout_seconds == 10
    assert "runner.checkpoint" in document.extensions.raw


def test_body_sub_workflow_blocks_and_tool_references():
    """Test extraction of quoted sub-workflow blocks and tool lines from the body."""
    text = """---
name: parent
model: m
---
First gather context.

> Execute: ./child.prompt.md
> Name: analysis
> Mode: isolated
> Depends on: setup, fetch
> Group: fetchers
> Parameters:
> - query: "{{topic}} facts"
> - limit: 5

> Execute: ./report.prompt.md

> Tool: search
"""
    document = parse_document(text)
    analysis, report = document.body.sub_workflow_references

    assert analysis.name == "analysis"
    assert analysis.path == "./child.prompt.md"
    assert analysis.mode == "isolated"
    assert analysis.depends_on == ["setup", "fetch"]
    assert analysis.parallel_group == "fetchers"
    assert analysis.parameters == {"query": "{{topic}} facts", "limit": 5}
    assert analysis.line == 7
    assert report.name == "report"
    assert report.mode == "inherit"
    assert document.body.tool_references == {"search"}
    assert [inv.name for inv in document.invocations] == ["analysis", "report"]


def test_parameter_references_exclude_locals():
    """Test that block arguments count and this/@ locals do not."""
    text = """{{#if show}}{{#each items}}{{@index}} {{this}} {{this.name}}{{/each}}{{/if}}
{{#unless hidden && !other}}x{{/unless}} {{user.profile.name}}"""
    document = parse_document(text)

    assert document.body.parameter_references == {"show", "items", "hidden", "other", "user"}


def test_shorthand_schema_entry():
    """Test that `param: string` means {type: string}."""
    text = """---
name: s
model: m
input:
  schema:
    city: string
    count: {type: integer, default: 3}
---
{{city}} {{count}}
"""
    document = parse_document(text)

    assert document.input.schema["city"].type == "string"
    assert document.input.schema["city"].has_default is False
    assert document.input.schema["count"].default == 3
    assert document.input.schema["count"].has_default is True


def test_malformed_yaml_reports_file_position():
    """Test that YAML errors carry the line and column in the original file."""
    text = """---
name: test
model: x
  bad: indent
---
Body
"""
    with pytest.raises(ParseError) as excinfo:
        parse_document(text, file_path="broken.prompt.md")

    error = excinfo.value
    assert error.code == "YAML_SYNTAX"
    assert error.file_path == "broken.prompt.md"
    assert error.line == 4
    assert error.column is not None
    assert str(error).startswith("broken.prompt.md:4:")


def test_unterminated_header():
    """Test that a header that is never closed is a parse error."""
    with pytest.raises(ParseError, match="never closed"):
        parse_document("---\nname: x\nmodel: y\n")


def test_header_schema_error():
    """Test that wrongly typed known keys are reported as parse errors."""
    text = """---
name: x
model: y
config:
  temperature: hot
---
Body
"""
    with pytest.raises(ParseError) as excinfo:
        parse_document(text)
    assert excinfo.value.code == "HEADER_SCHEMA"


def test_unclosed_block_reports_body_line():
    """Test that template errors point at the line in the file."""
    text = """---
name: t
model: m
---
Intro

{{#if ready}}
never closed
"""
    with pytest.raises(TemplateSyntaxError) as excinfo:
        parse_document(text)
    assert excinfo.value.line == 7


def test_stray_closing_block():
    """Test that a closing tag with no open block is rejected."""
    with pytest.raises(ParseError, match="no open block"):
        parse_document("text {{/each}}")


def test_empty_content_is_rejected():
    """Test that empty and whitespace-only content fail to parse."""
    with pytest.raises(ParseError) as excinfo:
        parse_document("   \n\n")
    assert excinfo.value.code == "EMPTY_CONTENT"


def test_load_document_checks_suffix(tmp_path):
    """Test that only *.prompt.md files are accepted."""
    path = tmp_path / "workflow.md"
    path.write_text("Body", encoding="utf-8")

    with pytest.raises(ParseError) as excinfo:
        load_document(path)
    assert excinfo.value.code == "INVALID_EXTENSION"


def test_load_document_reads_file(tmp_path):
    """Test loading from disk keeps the file path and derives the display name."""
    path = tmp_path / "daily-report.prompt.md"
    path.write_text("Write the report.", encoding="utf-8")

    document = load_document(path)

    assert document.file_path == str(path)
    assert document.display_name == "daily-report"
    assert document.base_dir == tmp_path.resolve()


def test_load_document_missing_file(tmp_path):
    """Test that a missing file is reported as a parse error."""
    with pytest.raises(ParseError) as excinfo:
        load_document(tmp_path / "absent.prompt.md")
    assert excinfo.value.code == "FILE_NOT_FOUND"


def test_load_document_invalid_encoding(tmp_path):
    """Test that a file that is not UTF-8 is reported as a parse error."""
    path = tmp_path / "latin.prompt.md"
    path.write_bytes(b"Caf\xe9 \xff report.\n")

    with pytest.raises(ParseError) as excinfo:
        load_document(path)
    assert excinfo.value.code == "ENCODING"
    assert excinfo.value.file_path == str(path)


def test_load_document_unreadable_path(tmp_path):
    """Test that a directory named like a workflow is reported as a parse error."""
    path = tmp_path / "folder.prompt.md"
    path.mkdir()

    with pytest.raises(ParseError) as excinfo:
        load_document(path)
    assert excinfo.value.code == "READ_ERROR"
