from __future__ import annotations

import logging
import subprocess
import threading
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol, Sequence

from pydantic import BaseModel

logger = logging.getLogger("rclone")

OutputCallback = Callable[[str], None]


class CommandOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    EXIT_CODE = "exit_code"
    START_FAILED = "start_failed"


class CommandResult(BaseModel):
    outcome: CommandOutcome
    exit_code: int
    output: str = ""
    error: str = ""

    @property
    def success(self) -> bool:
        return self.outcome == CommandOutcome.SUCCESS

    @property
    def timed_out(self) -> bool:
        return self.outcome == CommandOutcome.TIMEOUT

    def reason(self) -> str:
        if self.outcome == CommandOutcome.SUCCESS:
            return "ok"
        if self.outcome == CommandOutcome.TIMEOUT:
            return self.error or "process timed out"
        if self.outcome == CommandOutcome.START_FAILED:
            return f"could not start transfer tool: {self.error}"
        detail = (self.error or self.output).strip().splitlines()
        tail = detail[-1] if detail else ""
        return f"exit code {self.exit_code}" + (f": {tail}" if tail else "")


class TransferBackend(Protocol):
    def execute_command(
        self,
        args: Sequence[str],
        timeout: float,
        allowed_exit_codes: Iterable[int] = (),
        on_output: Optional[OutputCallback] = None,
    ) -> CommandResult:
        ...


def _pump(stream, sink: list[str], on_output: Optional[OutputCallback]):
    for line in iter(stream.readline, ""):
        line = line.rstrip("\n")
        sink.append(line)
        if on_output and line:
            try:
                on_output(line)
            except Exception:
                logger.exception("output_callback_failed")
    stream.close()


class RcloneBackend:
    """Runs the transfer tool as a subprocess with a hard timeout."""

    def __init__(self, binary: str = "rclone"):
        self.binary = binary

    def execute_command(
        self,
        args: Sequence[str],
        timeout: float,
        allowed_exit_codes: Iterable[int] = (),
        on_output: Optional[OutputCallback] = None,
    ) -> CommandResult:
        cmd = [self.binary, *[str(a) for a in args]]
        logger.debug("exec_start cmd=%s timeout=%s", " ".join(cmd), timeout)

        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            logger.error("exec_start_failed binary=%s error=%s", self.binary, e)
            return CommandResult(outcome=CommandOutcome.START_FAILED, exit_code=-1, error=str(e))

        out_lines: list[str] = []
        err_lines: list[str] = []
        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, out_lines, on_output), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, err_lines, on_output), daemon=True),
        ]
        for t in readers:
            t.start()

        try:
            exit_code = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            for t in readers:
                t.join(timeout=1)
            logger.warning("exec_timeout cmd=%s timeout=%s", args[0] if args else "", timeout)
            return CommandResult(
                outcome=CommandOutcome.TIMEOUT,
                exit_code=-1,
                output="\n".join(out_lines),
                error=f"process timed out after {timeout:g}s",
            )

        for t in readers:
            t.join()

        allowed = {0, *allowed_exit_codes}
        outcome = CommandOutcome.SUCCESS if exit_code in allowed else CommandOutcome.EXIT_CODE
        result = CommandResult(
            outcome=outcome,
            exit_code=exit_code,
            output="\n".join(out_lines),
            error="\n".join(err_lines),
        )
        if outcome != CommandOutcome.SUCCESS:
            logger.warning("exec_failed cmd=%s exit_code=%s reason=%s", args[0] if args else "", exit_code, result.reason())
        return result
