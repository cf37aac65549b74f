"""Claude Code CLI driven in non-interactive agent mode."""

from __future__ import annotations

from pathlib import Path
from typing import List

from .base import PROBE_TIMEOUT_S, CodeAgent


class ClaudeAgent(CodeAgent):
    name = "claude"
    executable = "claude"
    api_key_env = "ANTHROPIC_API_KEY"
    # The CLI sometimes exits 1 after writing files successfully.
    accepted_exit_codes = frozenset({0, 1})

    # File tools only; no shell access.
    allowed_tools = "Write,Edit,Read,Glob,Grep"

    def command(self, workspace: Path) -> List[str]:
        return [
            self.executable,
            "-p",
            "--dangerously-skip-permissions",
            "--allowedTools",
            self.allowed_tools,
            "--output-format",
            "text",
        ]

    def _check_available(self) -> bool:
        completed = self._execute(
            [self.executable, "-p", "--tools", ""],
            None,
            "say ok",
            timeout=PROBE_TIMEOUT_S,
        )
        return completed.returncode == 0
