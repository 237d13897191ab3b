"""Hook execution for dotkeeper."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .errors import HookFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HookResult:
    """Outcome of one hook command."""

    command: str
    success: bool
    error: Optional[str] = None


class HookRunner:
    """Runs named sets of shell commands.

    Commands run in order through the shell; the first failing command stops
    its set so validation hooks fail closed.
    """

    def __init__(self, timeout: float = 300, cwd: Optional[str] = None) -> None:
        self.timeout = timeout
        self.cwd = cwd

    def run(self, name: str, commands: Sequence[str]) -> List[HookResult]:
        """Run a hook set and return per-command results."""
        results: List[HookResult] = []
        for command in commands:
            logger.info("Running %s hook: %s", name, command)
            result = self._run_one(command)
            results.append(result)
            if not result.success:
                logger.error("%s hook failed: %s (%s)", name, command, result.error)
                break
        return results

    def run_or_raise(self, name: str, commands: Sequence[str]) -> List[HookResult]:
        """Run a hook set, raising :class:`HookFailure` if any command fails."""
        results = self.run(name, commands)
        failed = next((r for r in results if not r.success), None)
        if failed is not None:
            raise HookFailure(f"{name} hook '{failed.command}' failed: {failed.error}")
        return results

    def _run_one(self, command: str) -> HookResult:
        try:
            completed = subprocess.run(
                command,
                shell=True,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return HookResult(command, False, f"timed out after {self.timeout}s")
        except OSError as e:
            return HookResult(command, False, str(e))

        if completed.returncode != 0:
            error = completed.stderr.strip() or completed.stdout.strip()
            return HookResult(
                command, False, error or f"exited with status {completed.returncode}"
            )
        return HookResult(command, True)
