"""
Artifact classification.

Downloaded run artifacts are walked and bucketed by filename:
- agent_output.json  -> safe_outputs (parsed)
- aw_info.json       -> agentic_run_info (parsed)
- other .json/.jsonl/.yaml/.yml -> additional_artifacts[relative path] (parsed)
- text and logs      -> additional_artifacts[relative path] (raw text)

A file that fails to parse is logged and left out; the rest of the set is
still classified.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

AGENT_OUTPUT_FILENAME = "agent_output.json"
RUN_INFO_FILENAME = "aw_info.json"

STRUCTURED_SUFFIXES = {".json", ".jsonl", ".yaml", ".yml"}
TEXT_SUFFIXES = {".txt", ".log", ".md", ".patch", ".diff", ".csv", ".out"}


@dataclass
class ArtifactBundle:
    """Classified artifacts of one run."""
    safe_outputs: dict[str, Any] = field(default_factory=dict)
    agentic_run_info: dict[str, Any] = field(default_factory=dict)
    additional_artifacts: dict[str, Any] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)


def _as_object(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {"items": value}


def _parse_structured(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".jsonl":
        return [json.loads(line) for line in text.splitlines() if line.strip()]
    if path.suffix in (".yaml", ".yml"):
        return yaml.safe_load(text)
    return json.loads(text)


def classify_artifacts(directory: Path, logger: Optional[logging.Logger] = None) -> ArtifactBundle:
    """
    Walk directory and bucket every file it contains.

    Args:
        directory: Root of the downloaded artifacts
        logger: Logger for skipped files

    Returns:
        ArtifactBundle; empty if the directory does not exist
    """
    logger = logger or logging.getLogger(__name__)
    bundle = ArtifactBundle()
    directory = Path(directory)
    if not directory.is_dir():
        return bundle

    for path in sorted(p for p in directory.rglob("*") if p.is_file()):
        rel = path.relative_to(directory).as_posix()
        suffix = path.suffix.lower()
        try:
            if path.name == AGENT_OUTPUT_FILENAME and not bundle.safe_outputs:
                bundle.safe_outputs = _as_object(_parse_structured(path))
            elif path.name == RUN_INFO_FILENAME and not bundle.agentic_run_info:
                bundle.agentic_run_info = _as_object(_parse_structured(path))
            elif suffix in STRUCTURED_SUFFIXES:
                bundle.additional_artifacts[rel] = _parse_structured(path)
            elif suffix in TEXT_SUFFIXES:
                bundle.additional_artifacts[rel] = path.read_text(encoding="utf-8", errors="replace")
            else:
                logger.debug(f"Ignoring artifact with unknown type: {rel}")
        except (ValueError, yaml.YAMLError, OSError) as e:
            logger.warning(f"Skipping artifact {rel}: {e}")
            bundle.skipped.append(rel)

    return bundle
