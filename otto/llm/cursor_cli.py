"""
Cursor CLI as the LLM capability: every prompt runs ``agent -p --force`` headless
in the session's working directory, so the agent can read and edit files there.

The CLI call itself is stateless; a session keeps the transcript and replays it
in front of follow-up prompts (e.g. the corrective prompt of the JSON repair loop).
"""

import logging
import os
import subprocess
import threading
import time
import uuid
from typing import Dict, List, Tuple

from otto.llm.base import LLMClient, LLMError, PromptResponse, SessionInfo
from otto.provider.base import OperationCancelledError

POLL_SECONDS = 1.0

LOG = logging.getLogger("otto.llm.cursor_cli")


class _Session:
    def __init__(self, info: SessionInfo) -> None:
        self.info = info
        self.transcript: List[Tuple[str, str]] = []
        self.process: subprocess.Popen | None = None
        self.aborted = False


class CursorCLIClient(LLMClient):
    """Run Cursor CLI in headless mode (-p --force) per prompt."""

    def __init__(
        self,
        command: str = "agent",
        timeout: int = 900,
        token: str | None = None,
        model: str | None = None,
        cancel: threading.Event | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.command = command
        self.timeout = timeout
        self.token = token
        self.model = model
        self._cancel = cancel
        self._sessions: Dict[str, _Session] = {}
        self._lock = threading.Lock()
        self._log = log or LOG

    def create_session(self, title: str, workdir: str) -> SessionInfo:
        info = SessionInfo(id=uuid.uuid4().hex, title=title, workdir=str(workdir))
        with self._lock:
            self._sessions[info.id] = _Session(info)
        self._log.debug("Created LLM session %s (%s) in %s", info.id, title, workdir)
        return info

    def _get(self, session_id: str) -> _Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise LLMError(f"unknown session {session_id}")
        return session

    def delete_session(self, session_id: str) -> None:
        self.abort_session(session_id)
        with self._lock:
            self._sessions.pop(session_id, None)

    def abort_session(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or session.process is None:
            return
        session.aborted = True
        if session.process.poll() is None:
            self._log.info("Aborting LLM session %s", session_id)
            session.process.kill()

    @staticmethod
    def _with_transcript(session: _Session, prompt: str) -> str:
        if not session.transcript:
            return prompt
        parts = ["Conversation so far:"]
        for sent, received in session.transcript:
            parts.append(f"--- USER ---\n{sent}\n--- ASSISTANT ---\n{received}")
        parts.append(f"--- USER ---\n{prompt}")
        return "\n\n".join(parts)

    def _build_cmd(self, prompt: str) -> List[str]:
        cmd = [self.command, "-p", "--force", "--output-format", "text"]
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.append(prompt)
        return cmd

    def send_prompt(self, session_id: str, prompt: str) -> PromptResponse:
        session = self._get(session_id)
        cmd = self._build_cmd(self._with_transcript(session, prompt))
        env = os.environ.copy()
        if self.token:
            env["CURSOR_API_KEY"] = self.token

        self._log.info("Running Cursor CLI for session %s (timeout=%ss)", session.info.title, self.timeout)
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=session.info.workdir,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as e:
            raise LLMError(f"{self.command} not found") from e
        session.process = proc
        session.aborted = False
        deadline = time.monotonic() + self.timeout
        try:
            while True:
                try:
                    out, err = proc.communicate(timeout=POLL_SECONDS)
                    break
                except subprocess.TimeoutExpired:
                    if self._cancel is not None and self._cancel.is_set():
                        proc.kill()
                        proc.communicate()
                        raise OperationCancelledError("LLM prompt cancelled by shutdown")
                    if time.monotonic() >= deadline:
                        proc.kill()
                        proc.communicate()
                        raise LLMError(f"{self.command} timed out after {self.timeout}s")
        finally:
            session.process = None

        if session.aborted:
            raise LLMError(f"session {session_id} aborted")
        if proc.returncode != 0:
            raise LLMError(f"{self.command} exited with {proc.returncode}: {(err or out or '').strip()[:500]}")
        content = (out or "").strip()
        session.transcript.append((prompt, content))
        return PromptResponse(content=content)


def make_cursor_cli_client(config, cancel: threading.Event | None = None) -> CursorCLIClient:
    """Build the client from AppConfig.llm."""
    return CursorCLIClient(
        command=config.llm.command,
        timeout=config.llm.timeout,
        token=config.llm_token_resolved,
        model=config.llm.model,
        cancel=cancel,
    )
