import logging
import re
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .config import Config
from .failures import (
    DownloadFailure,
    FailureKind,
    InterruptedByUser,
    SyncError,
    ToolFailure,
    classify_tool_output,
    should_retry,
    substring_in,
    tool_failure_kind,
    EXTRACTION_BLOCKED_MESSAGE,
    THROTTLED_MESSAGES,
)
from .identity_pool import IdentityPool
from .sync_job import DiscoveredVideo
from .utils.system_utils import directory_size


logger = logging.getLogger(__name__)

CHROME_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/110.0.0.0 Safari/537.36"
)
GOOGLEBOT_USER_AGENT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"

QUALITY_LADDER: Tuple[str, ...] = ("1080", "720", "480", "360")
LONG_VIDEO_QUALITY_LADDER: Tuple[str, ...] = ("720", "480", "360")

NO_SUITABLE_RESOLUTION_MESSAGE = "could not find a suitable resolution"

_MEDIA_STEM_MAX_LENGTH = 30
_PARTIAL_SUFFIXES = ('.part', '.ytdl', '.temp', '.json')


@dataclass
class ToolResult:
    returncode: int
    stdout: str
    stderr: str
    stalled: bool = False


    @property
    def lines(self) -> List[str]:
        return self.stdout.replace('\r\n', '\n').split('\n')


@dataclass
class DownloadedFile:
    path: str
    size: int
    quality: str
    source_address: str


class StallMonitor(threading.Thread):
    """
    Samples the growth of a download directory and kills the process when it stalls.

    A sample below min_bytes_per_second adds a strike and a good sample removes
    one. Once strikes exceed max_strikes the process is killed and `stalled` is set.
    """

    def __init__(
        self,
        process,
        directory: str,
        interval: float = 10.0,
        min_bytes_per_second: int = 30 * 1024,
        max_strikes: int = 3,
        size_fn: Callable[[str], int] = directory_size,
    ):
        super().__init__(daemon=True, name=f"stall-monitor-{Path(directory).name}")
        self.process = process
        self.directory = directory
        self.interval = interval
        self.min_bytes_per_second = min_bytes_per_second
        self.max_strikes = max_strikes
        self.size_fn = size_fn
        self.strikes = 0
        self.stalled = False
        self._stop_event = threading.Event()


    def run(self):
        last_size = 0
        while not self._stop_event.wait(self.interval):
            try:
                size = self.size_fn(self.directory)
            except OSError as e:
                logger.error(f"error while getting size of download directory: {e}")
                continue

            speed = (size - last_size) / self.interval
            last_size = size

            if speed < self.min_bytes_per_second:
                self.strikes += 1
            elif self.strikes > 0:
                self.strikes -= 1

            if self.strikes > self.max_strikes:
                logger.warning(f"Download in {self.directory} stalled at {speed:.0f} B/s, killing it.")
                self.stalled = True
                try:
                    self.process.kill()
                except OSError as e:
                    logger.error(f"failure in killing slow download: {e}")
                return


    def stop(self):
        self._stop_event.set()


def run_tool(
    args: List[str],
    binary: str = 'yt-dlp',
    monitor_dir: Optional[str] = None,
    monitor_factory: Optional[Callable[..., StallMonitor]] = None,
) -> ToolResult:
    """
    Runs the yt-dlp binary with args and captures its output.

    When monitor_dir is given a StallMonitor watches it for the lifetime of the process.
    """
    logger.info(f"Running command {binary} {' '.join(args)}")
    process = subprocess.Popen(
        [binary] + list(args),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )

    monitor = None
    if monitor_dir is not None:
        factory = monitor_factory or StallMonitor
        monitor = factory(process, monitor_dir)
        monitor.start()

    try:
        stdout, stderr = process.communicate()
    finally:
        if monitor is not None:
            monitor.stop()
            monitor.join()

    return ToolResult(
        returncode=process.returncode,
        stdout=stdout or '',
        stderr=stderr or '',
        stalled=bool(monitor and monitor.stalled),
    )


def quality_ladder(duration_seconds: int, long_video_seconds: int = 60 * 60) -> Tuple[str, ...]:
    """Resolution ceilings to try, best first. Long videos only go up to 720p."""
    if duration_seconds > long_video_seconds:
        return LONG_VIDEO_QUALITY_LADDER
    return QUALITY_LADDER


def build_format_selector(height: str) -> str:
    return (
        f"bestvideo[ext=mp4][vcodec!*=av01][height<={height}]"
        "+bestaudio[ext!=webm][format_id!=258][format_id!=380][format_id!=251]"
        "[format_id!=256][format_id!=327][format_id!=328]"
    )


def media_file_stem(title: str, video_id: str) -> str:
    """
    Short file-system friendly name derived from the title, falling back to the video id.
    """
    chunks = re.sub(r'[^a-zA-Z0-9]+', '-', title).strip('-').lower().split('-')
    name = chunks[0][:_MEDIA_STEM_MAX_LENGTH]
    for chunk in chunks[1:]:
        candidate = f"{name}-{chunk}"
        if len(candidate) > _MEDIA_STEM_MAX_LENGTH:
            if len(name) < 20:
                name = candidate[:_MEDIA_STEM_MAX_LENGTH]
            break
        name = candidate
    return name or video_id


def build_download_args(
    video_id: str,
    output_template: str,
    cookies_file: Optional[str] = None,
    metadata_path: Optional[str] = None,
    max_filesize_mb: int = 0,
    max_duration_seconds: int = 0,
) -> List[str]:
    """
    Static part of the yt-dlp argument list. Format, user agent and source
    address are appended per attempt.
    """
    args = [
        f"https://www.youtube.com/watch?v={video_id}",
        "--no-progress",
        "-o", output_template,
        "--merge-output-format", "mp4",
        "--postprocessor-args", "ffmpeg:-movflags faststart",
        "--abort-on-unavailable-fragment",
        "--fragment-retries", "1",
    ]
    if cookies_file:
        args += ["--cookies", cookies_file]
    if metadata_path:
        args += ["--load-info-json", metadata_path]
    if max_filesize_mb > 0:
        args += ["--max-filesize", f"{max_filesize_mb}M"]
    if max_duration_seconds > 0:
        args += ["--match-filter", f"duration <= {max_duration_seconds}"]
    return args


def _next_user_agent(current: Optional[str]) -> str:
    if current == GOOGLEBOT_USER_AGENT:
        return CHROME_USER_AGENT
    return GOOGLEBOT_USER_AGENT


def _remove_directory(path: Path):
    if path.exists():
        shutil.rmtree(path, ignore_errors=True)


class DownloadOrchestrator:
    """
    Drives yt-dlp through the quality ladder, binding every attempt to an
    identity from the pool and translating the tool's output into failures.
    """

    def __init__(self, config: Config, pool: IdentityPool, download_dir: Optional[str] = None):
        self.config = config
        self.pool = pool
        self.download_dir = Path(download_dir or Path(config.work_dir) / "downloads")
        self.download_dir.mkdir(parents=True, exist_ok=True)


    def video_dir(self, video_id: str) -> Path:
        return self.download_dir / video_id


    def _metadata_path(self, video_id: str) -> Optional[str]:
        path = Path(self.config.video_metadata_dir) / f"{video_id}.info.json"
        return str(path) if path.exists() else None


    def _new_monitor(self, process, directory: str) -> StallMonitor:
        return StallMonitor(
            process,
            directory,
            interval=self.config.stall_check_interval_seconds,
            min_bytes_per_second=self.config.stall_min_bytes_per_second,
            max_strikes=self.config.stall_max_strikes,
        )


    def _run(self, args: List[str], monitor_dir: Optional[str] = None) -> ToolResult:
        return run_tool(
            args,
            binary=self.config.ytdlp_binary,
            monitor_dir=monitor_dir,
            monitor_factory=self._new_monitor,
        )


    def download(
        self,
        video: DiscoveredVideo,
        cancel_event: Optional[threading.Event] = None,
        max_filesize_mb: int = 0,
        max_duration_seconds: int = 0,
    ) -> DownloadedFile:
        """
        Downloads a video into its working directory and returns the resulting file.

        Raises DownloadFailure with the FailureKind the worker pool acts upon.
        """
        video_dir = self.video_dir(video.video_id)
        video_dir.mkdir(parents=True, exist_ok=True)
        stem = media_file_stem(video.title, video.video_id)

        existing = self._find_media_file(video_dir, stem)
        if existing is not None:
            logger.debug(f"{video.video_id} already exists at {existing}")
            return DownloadedFile(str(existing), existing.stat().st_size, '', '')

        ladder = quality_ladder(video.duration, self.config.long_video_seconds)
        base_args = build_download_args(
            video.video_id,
            str(video_dir / f"{stem}.%(ext)s"),
            cookies_file=self.config.cookies_file,
            metadata_path=self._metadata_path(video.video_id),
            max_filesize_mb=max_filesize_mb,
            max_duration_seconds=max_duration_seconds,
        )

        user_agent = CHROME_USER_AGENT
        quality_index = 0
        remaining_attempts = self.config.download_attempts
        last_reason = "download attempts exhausted"

        while remaining_attempts > 0:
            if cancel_event is not None and cancel_event.is_set():
                _remove_directory(video_dir)
                raise InterruptedByUser()
            remaining_attempts -= 1

            quality = ladder[quality_index]
            source_address = self.pool.acquire(video.video_id, cancel_event)
            try:
                args = base_args + [
                    "-f", build_format_selector(quality),
                    "--user-agent", user_agent,
                    "--source-address", source_address,
                ]
                result = self._run(args, monitor_dir=str(video_dir))
            finally:
                self.pool.release(source_address)

            if result.stalled:
                _remove_directory(video_dir)
                raise DownloadFailure(
                    f"download of {video.video_id} stalled below "
                    f"{self.config.stall_min_bytes_per_second} B/s and was killed",
                    FailureKind.RETRYABLE_TRANSIENT,
                )

            stderr = result.stderr if result.returncode != 0 else ''
            failure = classify_tool_output(stderr, result.stdout)

            if failure is None:
                media_file = self._find_media_file(video_dir, stem)
                if result.returncode == 0 and media_file is not None:
                    size = media_file.stat().st_size
                    logger.info(f"Downloaded {video.video_id} at {quality}p via {source_address} ({size} bytes)")
                    return DownloadedFile(str(media_file), size, quality, source_address)
                last_reason = f"yt-dlp exited with status {result.returncode} and no media file"
                self._clear_partial_files(video_dir)
                raise DownloadFailure(last_reason, FailureKind.RETRYABLE_TRANSIENT)

            self._clear_partial_files(video_dir)

            if failure is ToolFailure.THROTTLED:
                logger.warning(f"{source_address} got throttled while downloading {video.video_id}")
                self.pool.mark_throttled(source_address)
                remaining_attempts += 1
                continue

            if failure is ToolFailure.EXTRACTION_BLOCKED and user_agent != GOOGLEBOT_USER_AGENT:
                logger.info(f"trying different user agent for video {video.video_id}")
                user_agent = GOOGLEBOT_USER_AGENT
                last_reason = EXTRACTION_BLOCKED_MESSAGE
                continue

            kind = tool_failure_kind(failure, stderr)
            if kind is FailureKind.RETRYABLE_NEEDS_RESOLUTION_DOWNGRADE:
                # Ladder steps do not count against the attempt budget.
                remaining_attempts += 1
                quality_index += 1
                if quality_index >= len(ladder):
                    _remove_directory(video_dir)
                    reason = ToolFailure.TOO_BIG.value if failure is ToolFailure.TOO_BIG else NO_SUITABLE_RESOLUTION_MESSAGE
                    raise DownloadFailure(reason, FailureKind.PERMANENT_SKIP)
                logger.info(
                    f"{video.video_id}: {failure.value}, lowering quality to {ladder[quality_index]}p"
                )
                last_reason = failure.value
                continue

            _remove_directory(video_dir)
            raise DownloadFailure(stderr.strip() or failure.value, kind)

        _remove_directory(video_dir)
        raise DownloadFailure(last_reason, FailureKind.RETRYABLE_TRANSIENT)


    def fetch_lines(
        self,
        args: List[str],
        job_tag: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[str]:
        """
        Runs a metadata probe bound to a pool identity and returns its stdout lines.

        Throttled attempts do not count against the budget; reasons that are not
        worth retrying end the loop early.
        """
        user_agent: Optional[str] = None
        last_error = ''
        attempts = 0
        while attempts < self.config.download_attempts:
            if cancel_event is not None and cancel_event.is_set():
                raise InterruptedByUser()
            attempts += 1

            source_address = self.pool.acquire(job_tag, cancel_event)
            try:
                command = list(args) + ["--source-address", source_address]
                if user_agent:
                    command += ["--user-agent", user_agent]
                result = self._run(command)
            finally:
                self.pool.release(source_address)

            if result.returncode == 0:
                return result.lines

            last_error = result.stderr.strip() or f"yt-dlp exited with status {result.returncode}"
            if not should_retry(last_error):
                break
            if EXTRACTION_BLOCKED_MESSAGE in last_error:
                logger.warning(f"known extraction error for {job_tag}: {last_error}")
                user_agent = _next_user_agent(user_agent)
            if substring_in(last_error, THROTTLED_MESSAGES):
                self.pool.mark_throttled(source_address)
                attempts -= 1

        raise SyncError(last_error)


    @staticmethod
    def _find_media_file(video_dir: Path, stem: str) -> Optional[Path]:
        if not video_dir.is_dir():
            return None
        for entry in sorted(video_dir.iterdir()):
            if not entry.is_file() or entry.suffix in _PARTIAL_SUFFIXES:
                continue
            if entry.name.startswith(f"{stem}.") and not any(s in entry.suffixes for s in _PARTIAL_SUFFIXES):
                return entry
        return None


    @staticmethod
    def _clear_partial_files(video_dir: Path):
        if not video_dir.is_dir():
            return
        for entry in video_dir.iterdir():
            if entry.is_file():
                entry.unlink()


    def delete(self, video_id: str, reason: str):
        """Removes the working directory of a video."""
        video_dir = self.video_dir(video_id)
        _remove_directory(video_dir)
        logger.debug(f"{video_id} deleted from disk for '{reason}'")
