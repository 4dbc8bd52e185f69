import logging
import re
import shlex
import shutil
import subprocess
from contextlib import ExitStack
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import DependencyError, StageExecutionError
from .io_helpers import PathLike, _is_nonempty_file

logger = logging.getLogger(__name__)

Command = List[str]

# Arguments that make each tool print its version. Tools with an empty list print
# their version as part of the usage text when run bare.
TOOL_VERSION_ARGS: Dict[str, List[str]] = {
    "seqtk": [],
    "kmc": [],
    "pigz": ["--version"],
    "fastp": ["--version"],
    "lighter": ["-v"],
    "flash": ["--version"],
    "spades.py": ["--version"],
    "skesa": ["--version"],
    "megahit": ["--version"],
    "megahit_toolkit": ["dumpversion"],
    "velveth": [],
    "velvetg": [],
    "bwa": [],
    "samtools": ["--version"],
    "pilon": ["--version"],
}

_VERSION_RE = re.compile(r"\bv?(\d+\.\d+(?:\.\d+)?[\w.-]*)")


def check_dependencies(tools: Iterable[str]) -> Dict[str, str]:
    """Make sure every tool is on PATH and reports a version.

    Returns:
        Mapping of tool name to the version string it reported.
    Raises:
        DependencyError: on the first missing tool or unreadable version
    """
    versions = {}
    for tool in tools:
        if shutil.which(tool) is None:
            raise DependencyError(f"{tool} not found in PATH")
        versions[tool] = tool_version(tool)
        logger.info(f"Found {tool} - version {versions[tool]}")
    return versions


def tool_version(tool: str) -> str:
    cmd = [tool] + TOOL_VERSION_ARGS.get(tool, ["--version"])
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise DependencyError(f"Could not run {tool} to determine its version: {e}") from e
    match = _VERSION_RE.search(result.stdout + "\n" + result.stderr)
    if match is None:
        raise DependencyError(f"Could not determine version of {tool}")
    return match.group(1)


def _check_outputs(stage: str, outputs: Sequence[PathLike]) -> None:
    for output in outputs:
        if not _is_nonempty_file(output):
            raise StageExecutionError(stage, f"expected output {output} is missing or empty")


def _log_command(stage: str, cmd: Command, log) -> None:
    logger.info(f"[{stage}] {shlex.join(cmd)}")
    log.write(f"[{stage}] running: {shlex.join(cmd)}\n")
    log.flush()


def run_tool(
    stage: str,
    cmd: Command,
    log_path: PathLike,
    *,
    outputs: Sequence[PathLike] = (),
    stdout_path: Optional[PathLike] = None,
    cwd: Optional[PathLike] = None,
    env: Optional[Dict[str, str]] = None,
) -> None:
    """Run one external command, blocking until it exits.

    Stderr (and stdout, unless redirected to stdout_path) is appended to the run log.
    An interrupt while waiting kills the child before re-raising.

    Raises:
        StageExecutionError: if the command can't start, exits non-zero, or any path
            in outputs is missing or empty afterwards
    """
    with ExitStack() as stack:
        log = stack.enter_context(open(log_path, "a"))
        stdout = log
        if stdout_path is not None:
            stdout = stack.enter_context(open(stdout_path, "wb"))
        _log_command(stage, cmd, log)
        try:
            result = subprocess.run(cmd, stdout=stdout, stderr=log, cwd=cwd, env=env)
        except OSError as e:
            raise StageExecutionError(stage, f"could not execute {cmd[0]}: {e}") from e

    if result.returncode != 0:
        raise StageExecutionError(
            stage, f"{cmd[0]} exited with status {result.returncode}; see {log_path}"
        )
    _check_outputs(stage, outputs)


def capture_tool_output(stage: str, cmd: Command, log_path: PathLike) -> str:
    """Run a command whose stdout we need to parse; stderr goes to the run log."""
    with open(log_path, "a") as log:
        _log_command(stage, cmd, log)
        try:
            result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=log, text=True)
        except OSError as e:
            raise StageExecutionError(stage, f"could not execute {cmd[0]}: {e}") from e
        log.write(result.stdout)

    if result.returncode != 0:
        raise StageExecutionError(
            stage, f"{cmd[0]} exited with status {result.returncode}; see {log_path}"
        )
    return result.stdout


def _kill_all(procs: List[subprocess.Popen]) -> None:
    for proc in procs:
        if proc.poll() is None:
            proc.kill()
        proc.wait()


def run_piped(
    stage: str,
    cmds: Sequence[Command],
    log_path: PathLike,
    *,
    outputs: Sequence[PathLike] = (),
    stdout_path: Optional[PathLike] = None,
) -> None:
    """Run cmds as a pipeline (cmds[0] | cmds[1] | ...), each process's stderr to the
    run log. The whole pipeline fails if any member exits non-zero."""
    procs: List[subprocess.Popen] = []
    with ExitStack() as stack:
        log = stack.enter_context(open(log_path, "a"))
        final_stdout = log
        if stdout_path is not None:
            final_stdout = stack.enter_context(open(stdout_path, "wb"))
        for cmd in cmds:
            _log_command(stage, cmd, log)

        try:
            for i, cmd in enumerate(cmds):
                last = i == len(cmds) - 1
                stdin = procs[-1].stdout if procs else None
                proc = subprocess.Popen(
                    cmd,
                    stdin=stdin,
                    stdout=final_stdout if last else subprocess.PIPE,
                    stderr=log,
                )
                if stdin is not None:
                    # Let the upstream process see SIGPIPE if this one exits early
                    stdin.close()
                procs.append(proc)
            returncodes = [proc.wait() for proc in procs]
        except OSError as e:
            _kill_all(procs)
            raise StageExecutionError(stage, f"could not execute pipeline: {e}") from e
        except BaseException:
            _kill_all(procs)
            raise

    for cmd, returncode in zip(cmds, returncodes):
        if returncode != 0:
            raise StageExecutionError(
                stage, f"{cmd[0]} exited with status {returncode}; see {log_path}"
            )
    _check_outputs(stage, outputs)


def remove_quietly(path: PathLike) -> None:
    """Best-effort removal of a file or directory tree."""
    path = Path(path)
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")
