import logging
import os
import re
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

from reality_maker.errors import CollaboratorError

logger = logging.getLogger(__name__)

# An input that does not exist will not appear on retry.
_MISSING_INPUT_RE = re.compile(r"No such file or directory|does not exist", re.IGNORECASE)

_NOISE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^ffmpeg version\b",
        r"^ffprobe version\b",
        r"^built with\b",
        r"^configuration:",
        r"^(libav(util|codec|format|device|filter)|libswscale|libswresample|libpostproc)\b",
        r"^Input #\d+",
        r"^Output #\d+",
        r"^Stream mapping:",
        r"^Press \[q\] to stop",
    )
]


@dataclass(eq=False)
class FFmpegError(CollaboratorError):
    """
    Typed ffmpeg/ffprobe failure.
    - message: sanitized/shortened text safe for a job failure reason
    - stderr: full stderr for server logs/debugging
    - cmd: the command executed
    """
    message: str
    stderr: str = ""
    returncode: Optional[int] = None
    cmd: Optional[list] = None
    retryable: bool = True

    def __str__(self) -> str:
        return self.message


def _tail_lines(text: str, max_lines: int) -> list:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [ln.strip() for ln in normalized.split("\n") if ln.strip()]
    return lines[-max_lines:]


def sanitize_ffmpeg_stderr(stderr: str, max_lines: int = 25, max_chars: int = 4000) -> str:
    """
    Keep the error understandable but short: the last lines (where ffmpeg prints the
    real reason) without banner noise.
    """
    if not stderr:
        return "FFmpeg failed (no stderr)"

    cleaned = []
    for line in _tail_lines(stderr, max_lines):
        if any(p.match(line) for p in _NOISE_PATTERNS):
            continue
        if len(line) > 500:
            line = line[:500] + "…"
        cleaned.append(line)

    out = "\n".join(cleaned).strip() or "FFmpeg failed (no useful stderr)"
    if len(out) > max_chars:
        out = out[-max_chars:]
    return out


def build_ffmpeg_command(cmd: Sequence[str], threads: int = 0) -> list:
    """
    Normalize an ffmpeg invocation:
    - prepend the binary when only args are given
    - inject -nostdin to prevent background hangs
    - optionally cap threads to bound CPU use per worker
    """
    cmd_list = [str(c) for c in cmd]
    if not cmd_list:
        raise ValueError("Empty ffmpeg command")

    if os.path.basename(cmd_list[0]).lower() not in {"ffmpeg", "ffmpeg.exe"}:
        cmd_list.insert(0, "ffmpeg")

    if "-nostdin" not in cmd_list:
        cmd_list.insert(1, "-nostdin")

    if threads > 0 and "-threads" not in cmd_list:
        idx = cmd_list.index("-nostdin") + 1
        cmd_list[idx:idx] = ["-threads", str(threads)]
    return cmd_list


def _run(cmd_list: list, *, label: str, timeout: Optional[float], check: bool) -> subprocess.CompletedProcess:
    logger.debug("Running %s: %s", label, " ".join(cmd_list))
    try:
        proc = subprocess.run(cmd_list, capture_output=True, text=True, timeout=timeout, check=False)
    except subprocess.TimeoutExpired as e:
        raise FFmpegError(
            message=f"{label} timed out after {timeout}s",
            stderr=str(getattr(e, "stderr", "") or ""),
            cmd=cmd_list,
        )
    except FileNotFoundError:
        raise FFmpegError(message=f"{label} binary not found: {cmd_list[0]}", cmd=cmd_list, retryable=False)

    if check and proc.returncode != 0:
        rc = proc.returncode
        if proc.stderr:
            message = f"{label} failed (exit {rc}):\n{sanitize_ffmpeg_stderr(proc.stderr)}"
        elif rc in (137, -9):
            # SIGKILL with no stderr is almost always the OOM killer.
            message = f"{label} failed (exit {rc}). Likely out of memory in the worker."
        else:
            message = f"{label} failed (exit {rc}). No stderr captured."
        raise FFmpegError(
            message=message,
            stderr=proc.stderr or "",
            returncode=rc,
            cmd=cmd_list,
            retryable=not _MISSING_INPUT_RE.search(proc.stderr or ""),
        )

    return proc


def run_ffmpeg_capture(
    cmd: Sequence[str],
    *,
    check: bool = True,
    timeout: Optional[float] = None,
    threads: int = 0,
) -> subprocess.CompletedProcess:
    """Run ffmpeg, capturing output; raise FFmpegError with sanitized stderr on failure."""
    return _run(build_ffmpeg_command(cmd, threads=threads), label="FFmpeg", timeout=timeout, check=check)


def run_ffprobe_capture(
    cmd: Sequence[str],
    *,
    check: bool = True,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """Run ffprobe, capturing output; raise FFmpegError with sanitized stderr on failure."""
    cmd_list = [str(c) for c in cmd]
    if not cmd_list:
        raise ValueError("Empty ffprobe command")
    return _run(cmd_list, label="FFprobe", timeout=timeout, check=check)
