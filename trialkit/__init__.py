"""
trialkit - Add and trial agentic workflows

Resolves workflow references (local files, wildcards, remote repository
paths), installs them with their includes, and runs them as trials in a
sandbox host repository, collecting the artifacts each run produced.
"""

__version__ = "0.1.0"


__all__ = ["TrialkitConfig", "load_config", "get_trialkit_home"]

from .config import TrialkitConfig, load_config, get_trialkit_home
