"""
Failure taxonomy shared by the downloader, the video sync state machine and the
worker pool.

Neither yt-dlp nor the ledger daemon expose structured error codes, so every
translation from free text to a FailureKind goes through the substring tables
below. Anything not matched is treated as a transient, retryable failure.
"""

from enum import Enum
from typing import Iterable, Optional


class FailureKind(Enum):
    RETRYABLE_TRANSIENT = "retryable_transient"
    RETRYABLE_NEEDS_RESOLUTION_DOWNGRADE = "retryable_needs_resolution_downgrade"
    RETRYABLE_NEEDS_WALLET_REPAIR = "retryable_needs_wallet_repair"
    RETRYABLE_NEEDS_NEW_BLOCK = "retryable_needs_new_block"
    RETRYABLE_NEEDS_UTXO_CONSOLIDATION = "retryable_needs_utxo_consolidation"
    PERMANENT_SKIP = "permanent_skip"
    FATAL_ABORT_ALL = "fatal_abort_all"


class ToolFailure(Enum):
    """Outcome categories recognised in yt-dlp output."""
    THROTTLED = "throttled"
    FRAGMENTS_EXHAUSTED = "missing fragments"
    EXTRACTION_BLOCKED = "unable to extract"
    FORMAT_UNAVAILABLE = "Requested format is not available"
    TOO_LONG = "video is too long to process"
    TOO_BIG = "the video is too big to sync, skipping for now"
    UNKNOWN = "unknown"


class SyncError(Exception):
    """
    Base error for every failure surfaced by the sync pipeline.
    """

    def __init__(self, message: str, kind: Optional[FailureKind] = None):
        super().__init__(message)
        self.kind = kind if kind is not None else classify_error(message)


class DownloadFailure(SyncError):
    """Raised when the download orchestrator gives up on a video."""


class InterruptedByUser(SyncError):
    """Raised at any check point that observes the run-wide cancellation signal."""

    def __init__(self, message: str = "interrupted by user"):
        super().__init__(message, FailureKind.FATAL_ABORT_ALL)


INTERRUPTED_MESSAGE = "interrupted by user"

# --- yt-dlp output signatures ---
THROTTLED_MESSAGES = ("HTTP Error 429", "returned non-zero exit status 8")
FRAGMENTS_RETRIES_MESSAGE = "giving up after 0 fragment retries"
EXTRACTION_BLOCKED_MESSAGE = "YouTube said: Unable to extract video data"
FORMAT_NOT_AVAILABLE_MESSAGE = "Requested format is not available"
DURATION_CONSTRAINT_MESSAGE = "does not pass filter (duration"
SIZE_CONSTRAINT_MESSAGE = "File is larger than max-filesize"

# Reasons recorded on a video that mean it can never be published.
NEVER_RETRY_FAILURES = (
    "Error extracting sts from embedded url response",
    "Unable to extract signature tokens",
    "the video is too big to sync, skipping for now",
    "video is too long to process",
    "video is too short to process",
    "no compatible format available for this video",
    "Watch this video on YouTube.",
    "have blocked it on copyright grounds",
    "the video must be republished as we can't get the right size",
    "HTTP Error 403",
    "giving up after 0 fragment retries",
    "Sorry about that",
    "This video is not available",
    "Video unavailable",
    "requested format not available",
    "Sign in to confirm your age",
    "This video is unavailable",
    "video is a live stream and hasn't completed yet",
    "video is not public",
    "Premieres in",
    "Private video",
    "This live event will begin in",
    "This video has been removed by the uploader",
    "Premiere will begin shortly",
    "cannot unmarshal number 0.0",
    "default youtube thumbnail found",
    "livestream is likely bugged",
    "could not find a suitable resolution",
)

# Failures that are not worth retrying within the current run.
NO_RETRY_FAILURES = NEVER_RETRY_FAILURES + (
    "Requested format is not available",
    "non 200 status code received",
    "This video contains content from",
    "dont know which claim to update",
    "uploader has not made this video available in your country",
    "download error: AccessDenied: Access Denied",
    "Playback on other websites has been disabled by the video owner",
    "Error in daemon: Cannot publish empty file",
    "Client.Timeout exceeded while awaiting headers",
)

# Failures that abort the whole run.
FATAL_FAILURES = (
    "default_wallet already exists",
    "WALLET HAS NOT BEEN MOVED TO THE WALLET BACKUP DIR",
    "NotEnoughFunds",
    "no space left on device",
    "there was a problem uploading the wallet",
    "the channel in the wallet is different than the channel in the database",
    "this channel does not belong to this wallet!",
    "You already have a stream claim published under the name",
    "Daily Limit Exceeded",
    "ffprobe not found",
    "is not supported in this version",
)

BLOCKCHAIN_FAILURES = (
    "txn-mempool-conflict",
    "too-long-mempool-chain",
)

WALLET_FAILURES = (
    "Not enough funds to cover this transaction",
    "failed: Not enough funds",
    "Error in daemon: Insufficient funds, please deposit additional LBC",
)

TX_TOO_LARGE_FAILURES = ("tx-size",)

DAEMON_GLITCH_FAILURES = ("Error in daemon: 'str' object has no attribute 'get'",)

# Run-level errors that must not mark the channel as failed.
BENIGN_RUN_FAILURES = (
    "this youtube channel is being managed by another server",
    "interrupted during daemon startup",
    INTERRUPTED_MESSAGE,
    "use --skip-space-check to ignore",
    "failure uploading blockchain DB",
    "default_wallet already exists",
    "already claimed elsewhere",
)

DB_WIPE_FAILURES = ("Missing inputs",)


def substring_in(text: Optional[str], fragments: Iterable[str]) -> bool:
    """Returns True if any fragment appears in text."""
    if not text:
        return False
    return any(fragment in text for fragment in fragments)


def is_interruption(reason: str) -> bool:
    return INTERRUPTED_MESSAGE in (reason or "").lower()


def is_never_retry(reason: Optional[str]) -> bool:
    return substring_in(reason, NEVER_RETRY_FAILURES)


def should_retry(reason: str) -> bool:
    return not substring_in(reason, NO_RETRY_FAILURES)


def is_tx_too_large(reason: str) -> bool:
    return substring_in(reason, TX_TOO_LARGE_FAILURES)


def is_daemon_glitch(reason: str) -> bool:
    return substring_in(reason, DAEMON_GLITCH_FAILURES)


def is_benign_run_failure(reason: str) -> bool:
    return substring_in(reason, BENIGN_RUN_FAILURES)


def needs_db_wipe(reason: str) -> bool:
    return substring_in(reason, DB_WIPE_FAILURES)


def classify_error(message: str) -> FailureKind:
    """
    Maps free-text error messages from the tool or the daemon to a FailureKind.
    """
    text = message or ""
    if is_interruption(text) or substring_in(text, FATAL_FAILURES):
        return FailureKind.FATAL_ABORT_ALL
    if substring_in(text, BLOCKCHAIN_FAILURES):
        return FailureKind.RETRYABLE_NEEDS_NEW_BLOCK
    if is_tx_too_large(text):
        return FailureKind.RETRYABLE_NEEDS_UTXO_CONSOLIDATION
    if substring_in(text, WALLET_FAILURES):
        return FailureKind.RETRYABLE_NEEDS_WALLET_REPAIR
    if substring_in(text, NO_RETRY_FAILURES):
        return FailureKind.PERMANENT_SKIP
    return FailureKind.RETRYABLE_TRANSIENT


def classify_of(error: BaseException) -> FailureKind:
    """Classification of an exception, preferring the kind it already carries."""
    if isinstance(error, SyncError):
        return error.kind
    return classify_error(str(error))


def classify_tool_output(stderr: str, stdout: str = "") -> Optional[ToolFailure]:
    """
    Classifies the captured output of a yt-dlp invocation.

    stderr is inspected first; stdout only carries filter rejections and
    occasional throttling notices. Returns None when nothing went wrong.
    """
    if stderr:
        if substring_in(stderr, THROTTLED_MESSAGES):
            return ToolFailure.THROTTLED
        if FRAGMENTS_RETRIES_MESSAGE in stderr:
            return ToolFailure.FRAGMENTS_EXHAUSTED
        if EXTRACTION_BLOCKED_MESSAGE in stderr:
            return ToolFailure.EXTRACTION_BLOCKED
        if FORMAT_NOT_AVAILABLE_MESSAGE in stderr:
            return ToolFailure.FORMAT_UNAVAILABLE
        return ToolFailure.UNKNOWN

    if stdout:
        if DURATION_CONSTRAINT_MESSAGE in stdout:
            return ToolFailure.TOO_LONG
        if SIZE_CONSTRAINT_MESSAGE in stdout:
            return ToolFailure.TOO_BIG
        if substring_in(stdout, THROTTLED_MESSAGES):
            return ToolFailure.THROTTLED
    return None


# Outcomes handled by stepping down the quality ladder map to a downgrade.
# Anything else is classified from the text of stderr.
TOOL_FAILURE_KINDS = {
    ToolFailure.FRAGMENTS_EXHAUSTED: FailureKind.RETRYABLE_NEEDS_RESOLUTION_DOWNGRADE,
    ToolFailure.FORMAT_UNAVAILABLE: FailureKind.RETRYABLE_NEEDS_RESOLUTION_DOWNGRADE,
    ToolFailure.TOO_LONG: FailureKind.PERMANENT_SKIP,
    ToolFailure.TOO_BIG: FailureKind.RETRYABLE_NEEDS_RESOLUTION_DOWNGRADE,
}


def tool_failure_kind(failure: ToolFailure, stderr: str = "") -> FailureKind:
    """
    FailureKind of a classified yt-dlp outcome. Unrecognised output falls back
    to the free-text classification of stderr.
    """
    if failure in TOOL_FAILURE_KINDS:
        return TOOL_FAILURE_KINDS[failure]
    return classify_error(stderr)
