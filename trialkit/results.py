"""Trial result records and their on-disk layout."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WorkflowTrialResult:
    """
    Result of one workflow in one cycle.

    Serialized as:
        {workflow_name, run_id, safe_outputs, agentic_run_info?,
         additional_artifacts?, timestamp}
    """
    workflow_name: str
    run_id: str
    safe_outputs: dict[str, Any] = field(default_factory=dict)
    agentic_run_info: dict[str, Any] = field(default_factory=dict)
    additional_artifacts: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        result = {
            "workflow_name": self.workflow_name,
            "run_id": self.run_id,
            "safe_outputs": self.safe_outputs,
        }
        if self.agentic_run_info:
            result["agentic_run_info"] = self.agentic_run_info
        if self.additional_artifacts:
            result["additional_artifacts"] = self.additional_artifacts
        result["timestamp"] = self.timestamp.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowTrialResult":
        return cls(
            workflow_name=data["workflow_name"],
            run_id=str(data["run_id"]),
            safe_outputs=data.get("safe_outputs") or {},
            agentic_run_info=data.get("agentic_run_info") or {},
            additional_artifacts=data.get("additional_artifacts") or {},
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class CombinedTrialResult:
    """All workflow results of one cycle, when several ran together."""
    workflow_names: list[str]
    results: list[WorkflowTrialResult]
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_names": self.workflow_names,
            "results": [r.to_dict() for r in self.results],
            "timestamp": self.timestamp.isoformat(),
        }


def sanitize_for_filename(slug: str) -> str:
    """owner/repo -> owner-repo; empty means clone mode."""
    if not slug:
        return "clone-mode"
    return slug.replace("/", "-").replace("\\", "-").replace(":", "-")


def cycle_id(now: Optional[datetime] = None) -> str:
    """YYYYMMDD-HHMMSS-<microseconds>, unique per cycle."""
    now = now or datetime.now()
    return f"{now:%Y%m%d-%H%M%S}-{now.microsecond:06d}"


def trial_result_filename(workflow_names: list[str], target_slug: str, cycle: str) -> str:
    """<name[-name...]>-<sanitized target>.<cycle id>.json"""
    return f"{'-'.join(workflow_names)}-{sanitize_for_filename(target_slug)}.{cycle}.json"


def save_trial_result(path: Path, result: Any) -> Path:
    """Write a result record as indented JSON, creating parent dirs."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(result.to_dict(), f, indent=2, default=str)
        f.write("\n")
    logger.debug(f"Saved trial result to {path}")
    return path
