"""Subprocess helpers shared by the provider adapters."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536


@dataclass
class ProcessOutcome:
    """Result of running a CLI to completion (or until it was killed)."""

    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool = False


def kill_process_tree(process: subprocess.Popen) -> None:
    """Kill a process along with its entire process group."""
    if process.poll() is not None:
        return

    pid = getattr(process, "pid", None)

    if os.name == "nt":
        if isinstance(pid, int):
            try:
                subprocess.run(
                    ["taskkill", "/F", "/T", "/PID", str(pid)],
                    capture_output=True,
                    timeout=5,
                )
                return
            except (subprocess.SubprocessError, OSError):
                pass
        try:
            process.kill()
        except OSError:
            pass
        return

    if isinstance(pid, int):
        try:
            pgid = os.getpgid(pid)
            if pgid == pid:
                os.killpg(pgid, signal.SIGKILL)
                return
        except (ProcessLookupError, PermissionError, OSError):
            pass

    try:
        process.kill()
    except OSError:
        pass


def spawn_process(
    cmd: str | list[str],
    *,
    use_shell: bool = False,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    stdin: int | None = subprocess.DEVNULL,
) -> subprocess.Popen:
    """Start a CLI in its own process group with piped output.

    Raises:
        OSError: If the executable cannot be started
    """
    merged_env = {**os.environ, **(env or {})}
    kwargs: dict = {}
    if os.name == "nt":
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True
    return subprocess.Popen(
        cmd,
        shell=use_shell,
        cwd=cwd,
        env=merged_env,
        stdin=stdin,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        **kwargs,
    )


def _pump(pipe, sink: list[bytes], on_chunk: Callable[[bytes], None] | None) -> None:
    try:
        while True:
            chunk = pipe.read1(READ_CHUNK_SIZE) if hasattr(pipe, "read1") else pipe.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            sink.append(chunk)
            if on_chunk is not None:
                try:
                    on_chunk(chunk)
                except Exception:
                    logger.warning("Output chunk handler failed", exc_info=True)
    except (OSError, ValueError):
        logger.debug("Output pipe closed early", exc_info=True)
    finally:
        try:
            pipe.close()
        except OSError:
            pass


def _write_stdin(pipe, text: str) -> None:
    try:
        pipe.write(text.encode("utf-8"))
    except (BrokenPipeError, OSError, ValueError):
        logger.debug("Child closed stdin before the prompt was written", exc_info=True)
    finally:
        try:
            pipe.close()
        except (BrokenPipeError, OSError):
            pass


def run_process(
    cmd: str | list[str],
    *,
    use_shell: bool = False,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    input_text: str | None = None,
    timeout: float | None = None,
    on_stdout: Callable[[bytes], None] | None = None,
) -> ProcessOutcome:
    """Run a CLI to completion, streaming stdout chunks as they arrive.

    Stdout and stderr are drained by worker threads so a chatty child never
    blocks on a full pipe while the prompt is still being written. On timeout
    the whole process group is killed.

    Args:
        cmd: Argument list, or a shell string when ``use_shell`` is true
        use_shell: Run through the shell
        cwd: Working directory for the child
        env: Variables layered over the current environment
        input_text: Text written to stdin, which is then closed
        timeout: Seconds to wait for exit; None waits forever
        on_stdout: Called from the worker thread with each raw stdout chunk

    Returns:
        ProcessOutcome with decoded output

    Raises:
        OSError: If the executable cannot be started
    """
    process = spawn_process(
        cmd,
        use_shell=use_shell,
        cwd=cwd,
        env=env,
        stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
    )
    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    workers = [
        threading.Thread(target=_pump, args=(process.stdout, stdout_chunks, on_stdout), daemon=True),
        threading.Thread(target=_pump, args=(process.stderr, stderr_chunks, None), daemon=True),
    ]
    if input_text is not None and process.stdin is not None:
        workers.append(
            threading.Thread(target=_write_stdin, args=(process.stdin, input_text), daemon=True)
        )
    for worker in workers:
        worker.start()

    timed_out = False
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        kill_process_tree(process)
        process.wait()

    for worker in workers:
        worker.join(timeout=5)

    return ProcessOutcome(
        returncode=process.returncode,
        stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
        stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
        timed_out=timed_out,
    )
