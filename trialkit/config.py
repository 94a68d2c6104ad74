"""
Configuration management for trialkit.

Loads config.yaml from the trialkit home directory
(TRIALKIT_HOME, default ~/.config/trialkit).
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

DEFAULT_ENGINE_SECRETS = {
    "copilot": "COPILOT_GITHUB_TOKEN",
    "claude": "ANTHROPIC_API_KEY",
    "codex": "OPENAI_API_KEY",
}


def get_trialkit_home() -> Path:
    """Directory holding config.yaml and .env."""
    env_home = os.environ.get("TRIALKIT_HOME")
    if env_home:
        return Path(env_home)
    return Path("~/.config/trialkit").expanduser()


@dataclass
class TrialkitConfig:
    """trialkit settings. Every field has a working default."""
    github_host: str = "https://github.com"
    default_host_repo_name: str = "trialkit-host"
    timeout_minutes: int = 30
    poll_interval_seconds: float = 5
    compiler_command: List[str] = field(default_factory=lambda: ["gh", "aw", "compile"])
    scanner_command: Optional[List[str]] = None
    engine_secrets: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ENGINE_SECRETS))
    results_dir: str = "trials"
    log_file: Optional[str] = None
    log_level: str = "INFO"
    log_format: str = "pretty"
    env_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrialkitConfig":
        """Build a config from parsed YAML; unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known and v is not None}
        if "engine_secrets" in values:
            values["engine_secrets"] = {**DEFAULT_ENGINE_SECRETS, **values["engine_secrets"]}
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def get_log_file_path(self) -> Optional[Path]:
        return Path(self.log_file).expanduser() if self.log_file else None


def load_config() -> TrialkitConfig:
    """
    Load config.yaml from the trialkit home.

    Loads env_file into the process environment when it is set.

    Returns:
        TrialkitConfig instance

    Raises:
        FileNotFoundError: If config.yaml does not exist
        ValueError: If config.yaml is not a mapping
    """
    cfg_path = get_trialkit_home() / "config.yaml"
    if not cfg_path.exists():
        raise FileNotFoundError(
            f"trialkit config.yaml not found at {cfg_path}. Run `trialkit init` to create one."
        )

    with open(cfg_path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{cfg_path} must contain a mapping")

    config = TrialkitConfig.from_dict(data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path)

    return config
