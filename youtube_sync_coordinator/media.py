import json
import logging
import subprocess

from .failures import FailureKind, SyncError


logger = logging.getLogger(__name__)

FFPROBE_TIMEOUT_SECONDS = 5


def get_media_duration(file_path: str, ffprobe_binary: str = "ffprobe") -> float:
    """
    Duration in seconds of a downloaded file, read from the format section of ffprobe.

    A missing ffprobe aborts the run. A failed ffprobe run raises RuntimeError and
    output without a numeric duration raises ValueError.
    """
    args = [ffprobe_binary, "-v", "error", "-show_entries", "format=duration", "-of", "json", file_path]
    try:
        completed = subprocess.run(args, capture_output=True, text=True, check=True, timeout=FFPROBE_TIMEOUT_SECONDS)
    except FileNotFoundError as e:
        raise SyncError("ffprobe not found", FailureKind.FATAL_ABORT_ALL) from e
    except subprocess.TimeoutExpired as e:
        raise RuntimeError(f"ffprobe timed out on {file_path}") from e
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"ffprobe failed on {file_path}: {(e.stderr or '').strip() or e}") from e

    try:
        duration = json.loads(completed.stdout or '{}').get('format', {}).get('duration')
        return float(duration)
    except (TypeError, ValueError, AttributeError) as e:
        logger.debug(f"unusable ffprobe output for {file_path}: {completed.stdout!r}")
        raise ValueError(f"ffprobe returned no usable duration for {file_path}") from e
