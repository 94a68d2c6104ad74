"""
External services consumed at the orchestration boundary.

- Compiler: turns an installed workflow document into an executable
  pipeline definition (a `.lock.yml` next to the `.md`).
- SecurityScanner: inspects workflow content before installation.

Both are black boxes. The command-backed implementations shell out to
configured tools; tests substitute fakes.
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from trialkit.errors import CompileError, TrialkitError


@dataclass(frozen=True)
class CompileOptions:
    """Options passed to the compiler for one workflow."""
    trial_mode: bool = False
    logical_repo: str = ""
    engine_override: str = ""


@dataclass(frozen=True)
class CompiledWorkflow:
    """Compiler output for one workflow document."""
    source: Path
    lock_file: Path
    warnings: list[str] = field(default_factory=list)


class Compiler(ABC):
    """Abstract workflow compiler."""

    @abstractmethod
    def compile(self, files: list[Path], options: CompileOptions) -> list[CompiledWorkflow]:
        """
        Compile workflow documents.

        Args:
            files: Workflow .md files to compile
            options: Compile options

        Returns:
            One CompiledWorkflow per input file

        Raises:
            CompileError: If the compiler rejects any file
        """
        pass


def lock_file_for(workflow_file: Path) -> Path:
    return workflow_file.with_name(f"{workflow_file.stem}.lock.yml")


class CommandCompiler(Compiler):
    """Compiler that runs an external command per file."""

    def __init__(self, command: list[str], logger: Optional[logging.Logger] = None):
        self.command = list(command)
        self.logger = logger or logging.getLogger(__name__)

    def _args(self, workflow_file: Path, options: CompileOptions) -> list[str]:
        args = [*self.command, workflow_file.stem]
        if options.trial_mode:
            args.append("--trial")
            if options.logical_repo:
                args += ["--logical-repo", options.logical_repo]
        if options.engine_override:
            args += ["--engine", options.engine_override]
        return args

    def compile(self, files: list[Path], options: CompileOptions) -> list[CompiledWorkflow]:
        results = []
        for workflow_file in files:
            args = self._args(workflow_file, options)
            # Compilers resolve names relative to the repository root
            repo_root = workflow_file.parent.parent.parent
            self.logger.debug(f"Compiling {workflow_file}: {' '.join(args)}")
            try:
                proc = subprocess.run(args, cwd=str(repo_root), capture_output=True, text=True)
            except FileNotFoundError as e:
                raise CompileError(f"compiler '{self.command[0]}' not found") from e
            if proc.returncode != 0:
                raise CompileError(
                    f"failed to compile {workflow_file.name}: {(proc.stderr or proc.stdout).strip()}"
                )
            lock_file = lock_file_for(workflow_file)
            if not lock_file.exists():
                raise CompileError(f"compiler produced no lock file for {workflow_file.name}")
            warnings = [line for line in proc.stderr.splitlines() if "warning" in line.lower()]
            results.append(CompiledWorkflow(source=workflow_file, lock_file=lock_file, warnings=warnings))
        return results


@dataclass(frozen=True)
class SecurityFinding:
    """One issue reported by the security scanner."""
    message: str
    line: int = 0

    def __str__(self) -> str:
        return f"line {self.line}: {self.message}" if self.line else self.message


class SecurityScanner(ABC):
    """Abstract content scanner. Any finding blocks installation."""

    @abstractmethod
    def scan(self, content: str) -> list[SecurityFinding]:
        pass


class NoOpSecurityScanner(SecurityScanner):
    """Scanner that never reports findings."""

    def scan(self, content: str) -> list[SecurityFinding]:
        return []


class CommandSecurityScanner(SecurityScanner):
    """
    Scanner backed by an external command.

    Content is written to the command's stdin. Each non-empty stdout line
    is a finding, optionally prefixed with `<line>:`.
    """

    def __init__(self, command: list[str], logger: Optional[logging.Logger] = None):
        self.command = list(command)
        self.logger = logger or logging.getLogger(__name__)

    def scan(self, content: str) -> list[SecurityFinding]:
        try:
            proc = subprocess.run(self.command, input=content, capture_output=True, text=True)
        except OSError as e:
            raise TrialkitError(f"security scanner '{self.command[0]}' could not be run: {e}") from e
        if proc.returncode not in (0, 1):
            raise TrialkitError(f"security scanner failed: {proc.stderr.strip()}")
        findings = []
        for raw in proc.stdout.splitlines():
            raw = raw.strip()
            if not raw:
                continue
            prefix, sep, rest = raw.partition(":")
            if sep and prefix.isdigit():
                findings.append(SecurityFinding(message=rest.strip(), line=int(prefix)))
            else:
                findings.append(SecurityFinding(message=raw))
        return findings
