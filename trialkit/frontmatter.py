"""Structured header (YAML frontmatter) helpers for workflow documents."""

import logging
import re
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

_DELIMITER = "---"
_SOURCE_LINE_RE = re.compile(r"^source:")


def _split(content: str) -> tuple[Optional[list[str]], list[str]]:
    lines = content.splitlines()
    if not lines or lines[0].strip() != _DELIMITER:
        return None, lines
    for i in range(1, len(lines)):
        if lines[i].strip() == _DELIMITER:
            return lines[1:i], lines[i + 1:]
    return None, lines


def extract_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """
    Split a workflow document into its header mapping and markdown body.

    A document without a header, or with a header that is not a YAML
    mapping, yields an empty dict.

    Raises:
        yaml.YAMLError: If the header is not valid YAML
    """
    header, body = _split(content)
    if header is None:
        return {}, content
    data = yaml.safe_load("\n".join(header))
    if not isinstance(data, dict):
        data = {}
    return data, "\n".join(body)


def _safe_frontmatter(content: str) -> dict[str, Any]:
    try:
        data, _ = extract_frontmatter(content)
    except yaml.YAMLError as e:
        logger.debug(f"Ignoring unparsable frontmatter: {e}")
        return {}
    return data


def extract_description(content: str) -> str:
    description = _safe_frontmatter(content).get("description")
    return description.strip() if isinstance(description, str) else ""


def extract_engine(content: str) -> str:
    """Preferred engine: either `engine: id` or `engine: {id: ...}`."""
    engine = _safe_frontmatter(content).get("engine")
    if isinstance(engine, str):
        return engine
    if isinstance(engine, dict) and isinstance(engine.get("id"), str):
        return engine["id"]
    return ""


def _trigger_field(data: dict[str, Any]) -> Any:
    # PyYAML (YAML 1.1) loads a bare `on` key as boolean True
    if "on" in data:
        return data["on"]
    return data.get(True)


def has_workflow_dispatch(content: str) -> bool:
    """True when the `on` trigger declares workflow_dispatch."""
    on = _trigger_field(_safe_frontmatter(content))
    if isinstance(on, dict):
        return "workflow_dispatch" in on
    if isinstance(on, str):
        return "workflow_dispatch" in on.lower()
    if isinstance(on, list):
        return any(isinstance(item, str) and item.lower() == "workflow_dispatch" for item in on)
    return False


def is_valid_workflow_file(content: str) -> bool:
    """A workflow document has a header with an `on` trigger."""
    return _trigger_field(_safe_frontmatter(content)) is not None


def add_source_field(content: str, source: str) -> str:
    """
    Set the top-level `source:` field in the document header.

    Replaces an existing source line, and creates a header when the
    document has none.
    """
    header, body = _split(content)
    source_line = f"source: {source}"
    if header is None:
        new_lines = [_DELIMITER, source_line, _DELIMITER] + body
    else:
        kept = [line for line in header if not _SOURCE_LINE_RE.match(line)]
        new_lines = [_DELIMITER] + kept + [source_line, _DELIMITER] + body
    result = "\n".join(new_lines)
    if content.endswith("\n"):
        result += "\n"
    return result
