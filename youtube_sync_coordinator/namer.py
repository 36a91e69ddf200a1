import re
import threading
from typing import Dict, Iterable, Optional


CLAIM_NAME_MAX_BYTES = 40

_FORBIDDEN_CHARACTERS = re.compile(r'[=&#:$@%?？;、\\"/<>{}|^~`\[\]\s*]')


def _byte_length(text: str) -> int:
    return len(text.encode('utf-8'))


def _truncate_bytes(text: str, max_bytes: int) -> str:
    """Keeps every character that starts before max_bytes."""
    offset = 0
    for index, char in enumerate(text):
        if offset >= max_bytes:
            return text[:index]
        offset += _byte_length(char)
    return text


def claim_name_from_title(title: str, attempt: int) -> str:
    """
    Slug used as the claim name of a video.

    Forbidden characters become dashes, the result is lowercased and kept within
    a 40 byte budget. From the second attempt on a `-N` suffix is appended.
    """
    suffix = f"-{attempt}" if attempt > 1 else ""
    max_length = CLAIM_NAME_MAX_BYTES - len(suffix)

    slug = _FORBIDDEN_CHARACTERS.sub('-', title).strip('-').lower()
    chunks = slug.split('-')

    name = chunks[0]
    if _byte_length(name) > max_length:
        return name[:max_length] + suffix

    for chunk in chunks[1:]:
        if not chunk:
            continue
        candidate = f"{name}-{chunk}"
        if _byte_length(candidate) > max_length:
            if _byte_length(name) < 20:
                name = _truncate_bytes(candidate, max_length)
            break
        name = candidate

    return name + suffix


class ClaimNamer:
    """
    Hands out claim names that are not yet used by this channel. Thread safe.
    """

    def __init__(self, used_names: Optional[Iterable[str]] = None):
        self._lock = threading.Lock()
        self._names: Dict[str, bool] = {name: True for name in (used_names or [])}


    def set_names(self, names: Dict[str, bool]):
        with self._lock:
            self._names = dict(names)


    def next_name(self, title: str) -> str:
        with self._lock:
            attempt = 1
            while True:
                name = claim_name_from_title(title, attempt)
                if name and name not in self._names:
                    self._names[name] = True
                    return name
                attempt += 1


    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._names
