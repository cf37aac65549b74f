"""OpenAI Codex CLI driven through ``codex exec``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from ..errors import AgentError
from .base import PROBE_TIMEOUT_S, CodeAgent

LOGGER = logging.getLogger(__name__)


class CodexAgent(CodeAgent):
    name = "openai"
    executable = "codex"
    api_key_env = "OPENAI_API_KEY"

    def command(self, workspace: Path) -> List[str]:
        return [
            self.executable,
            "exec",
            "-",
            "--sandbox",
            "workspace-write",
            "--skip-git-repo-check",
            "-C",
            str(workspace),
        ]

    def prepare(self, workspace: Path) -> None:
        """Log the CLI in with the API key when one is configured.

        A failed login is not fatal: the CLI may already hold a session.
        """

        api_key = self._environ().get(self.api_key_env)
        if not api_key:
            return
        try:
            completed = self._execute(
                [self.executable, "login", "--with-api-key"],
                None,
                api_key,
                timeout=PROBE_TIMEOUT_S,
            )
        except AgentError as error:
            LOGGER.warning("codex login failed: %s", error)
            return
        if completed.returncode != 0:
            LOGGER.warning("codex login exited with %s", completed.returncode)

    def _check_available(self) -> bool:
        completed = self._execute(
            [self.executable, "login", "status"],
            None,
            "",
            timeout=PROBE_TIMEOUT_S,
        )
        output = f"{completed.stdout}\n{completed.stderr}".lower()
        return completed.returncode == 0 and ("logged in" in output or "authenticated" in output)
