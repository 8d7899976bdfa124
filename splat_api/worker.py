import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Dict, List, NamedTuple, Optional

from .config import Settings
from .errors import GenerationFailed, GenerationTimedOut

logger = logging.getLogger(__name__)

POLL_INTERVAL_SEC = 0.2
READER_JOIN_SEC = 5.0


class GeneratorResult(NamedTuple):
    returncode: int
    stdout: str
    stderr: str


def build_command(settings: Settings, input_dir: Path, output_dir: Path) -> List[str]:
    argv = [
        arg.replace("{input_dir}", str(input_dir)).replace("{output_dir}", str(output_dir))
        for arg in settings.generator_command
    ]
    if settings.conda_sh and settings.conda_env:
        script = "source {} && conda activate {} && {}".format(
            shlex.quote(settings.conda_sh),
            shlex.quote(settings.conda_env),
            shlex.join(argv),
        )
        return ["bash", "-c", script]
    return argv


def build_env(settings: Settings) -> Dict[str, str]:
    env = os.environ.copy()
    env.update(settings.generator_env)
    return env


def _kill(proc: subprocess.Popen) -> None:
    # the generator runs in its own session, so a bash wrapper takes its children with it
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def _pump(stream: IO[str], sink: List[str], label: str) -> None:
    # long runs print progress; relay it as it arrives instead of after exit
    with stream:
        for line in stream:
            sink.append(line)
            logger.info("[%s] %s", label, line.rstrip())


def run_generator(
    settings: Settings,
    input_dir: Path,
    output_dir: Path,
    cancel: Optional[threading.Event] = None,
) -> GeneratorResult:
    """Run the external generator for one job and wait for it to exit.

    Both output streams are logged line by line while the child runs.
    Raises GenerationFailed on a non-zero exit (or when the executable cannot
    be started) and GenerationTimedOut when the timeout expires or ``cancel``
    is set; in both cases the child has been killed before the error is raised.
    """
    cmd = build_command(settings, input_dir, output_dir)
    logger.info("Running generator: %s", " ".join(cmd))
    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(output_dir),
            env=build_env(settings),
            text=True,
            errors="replace",
            start_new_session=True,
        )
    except OSError as exc:
        raise GenerationFailed(f"cannot start generator: {exc}") from exc

    out_lines: List[str] = []
    err_lines: List[str] = []
    readers = [
        threading.Thread(target=_pump, args=(proc.stdout, out_lines, "generator"), daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, err_lines, "generator stderr"), daemon=True),
    ]
    for reader in readers:
        reader.start()

    timeout = settings.generator_timeout_sec
    deadline = time.monotonic() + timeout if timeout > 0 else None
    stop_reason = None
    while True:
        wait = POLL_INTERVAL_SEC
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                stop_reason = f"generator timed out after {timeout:g}s"
                break
            wait = min(wait, remaining)
        if cancel is not None and cancel.is_set():
            stop_reason = "generation cancelled"
            break
        try:
            proc.wait(timeout=wait)
            break
        except subprocess.TimeoutExpired:
            continue

    if stop_reason is not None:
        _kill(proc)
        proc.wait()
    for reader in readers:
        reader.join(timeout=READER_JOIN_SEC)
    stdout, stderr = "".join(out_lines), "".join(err_lines)

    if stop_reason is not None:
        logger.warning("%s (pid %s)", stop_reason, proc.pid)
        raise GenerationTimedOut(stop_reason, stderr)

    result = GeneratorResult(proc.returncode, stdout, stderr)
    logger.info("Generator exited with code %s", result.returncode)
    if result.returncode != 0:
        error = GenerationFailed.from_exit(result.returncode, result.stderr)
        logger.warning("%s", error)
        raise error
    return result
