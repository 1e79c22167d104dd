"""Agent process hosts.

A host runs agent processes and reports their lifecycle through three
callbacks bound by the orchestrator. The orchestrator only ever sees text.
"""

import logging
import shlex
import subprocess
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

StartedCallback = Callable[[str], None]
OutputCallback = Callable[[str, str], None]
ExitCallback = Callable[[str, int | None], None]


class AgentHostError(Exception):
    """Raised when an agent process cannot be launched or reached."""


class AgentHost(Protocol):
    def bind(
        self,
        on_started: StartedCallback,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> None: ...

    def launch(self, agent_id: str, prompt: str, cwd: str) -> None: ...

    def send_input(self, agent_id: str, text: str) -> None: ...

    def terminate(self, agent_id: str) -> None: ...


def _ignore(*args):
    pass


class SubprocessAgentHost:
    """Runs each agent as a child process with piped stdin and stdout.

    The prompt is written to stdin, which stays open for later instructions.
    Output is read line by line on one thread per agent and mirrored to
    `<log_dir>/<agent_id>.log` when a log directory is given. Nothing written
    to stdin is echoed back.
    """

    def __init__(
        self,
        command: str,
        log_dir: Path | None = None,
        terminate_timeout: float = 5.0,
    ):
        self.command = shlex.split(command)
        self.log_dir = Path(log_dir) if log_dir else None
        self.terminate_timeout = terminate_timeout
        self._procs: dict[str, subprocess.Popen] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._on_started: StartedCallback = _ignore
        self._on_output: OutputCallback = _ignore
        self._on_exit: ExitCallback = _ignore

    def bind(self, on_started, on_output, on_exit) -> None:
        self._on_started = on_started
        self._on_output = on_output
        self._on_exit = on_exit

    def launch(self, agent_id: str, prompt: str, cwd: str) -> None:
        try:
            proc = subprocess.Popen(
                self.command,
                cwd=cwd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            raise AgentHostError(f"Failed to launch agent {agent_id[:8]}: {e}") from e

        with self._lock:
            self._procs[agent_id] = proc
        logger.info("Launched agent %s (PID %s) in %s", agent_id[:8], proc.pid, cwd)
        self._on_started(agent_id)

        thread = threading.Thread(
            target=self._read_output,
            args=(agent_id, proc),
            name=f"agent-{agent_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._threads[agent_id] = thread
        thread.start()

        try:
            self._write(proc, prompt)
        except AgentHostError:
            logger.warning("Agent %s exited before reading its prompt", agent_id[:8])

    def send_input(self, agent_id: str, text: str) -> None:
        with self._lock:
            proc = self._procs.get(agent_id)
        if proc is None:
            raise AgentHostError(f"Agent not running: {agent_id[:8]}")
        self._write(proc, text)

    def terminate(self, agent_id: str) -> None:
        with self._lock:
            proc = self._procs.get(agent_id)
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=self.terminate_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Agent %s ignored SIGTERM, killing", agent_id[:8])
            proc.kill()
        logger.info("Terminated agent %s", agent_id[:8])

    def terminate_all(self) -> None:
        with self._lock:
            agent_ids = list(self._procs)
        for agent_id in agent_ids:
            self.terminate(agent_id)

    def running(self) -> list[str]:
        with self._lock:
            return [aid for aid, p in self._procs.items() if p.poll() is None]

    def join(self, agent_id: str, timeout: float | None = None) -> None:
        """Wait for the agent's output to be fully consumed."""
        with self._lock:
            thread = self._threads.get(agent_id)
        if thread:
            thread.join(timeout)

    def _write(self, proc: subprocess.Popen, text: str) -> None:
        if proc.stdin is None or proc.stdin.closed:
            raise AgentHostError("Agent stdin is closed")
        try:
            proc.stdin.write(text if text.endswith("\n") else text + "\n")
            proc.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as e:
            raise AgentHostError(f"Could not write to agent: {e}") from e

    def _read_output(self, agent_id: str, proc: subprocess.Popen):
        log_file = None
        if self.log_dir:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            log_file = open(self.log_dir / f"{agent_id}.log", "a")
        try:
            for line in proc.stdout:
                if log_file:
                    log_file.write(line)
                    log_file.flush()
                try:
                    self._on_output(agent_id, line)
                except Exception:
                    logger.exception("Output handler failed for agent %s", agent_id[:8])
        finally:
            if log_file:
                log_file.close()
            exit_code = proc.wait()
            if proc.stdin:
                try:
                    proc.stdin.close()
                except OSError:
                    pass
            with self._lock:
                self._procs.pop(agent_id, None)
            try:
                self._on_exit(agent_id, exit_code)
            except Exception:
                logger.exception("Exit handler failed for agent %s", agent_id[:8])
