import logging
import re
from typing import Optional

from langdetect import DetectorFactory, detect_langs
from langdetect.lang_detect_exception import LangDetectException


logger = logging.getLogger(__name__)

# langdetect is randomized; a fixed seed makes repeated runs agree.
DetectorFactory.seed = 0

RELIABLE_PROBABILITY = 0.9

_URLS = re.compile(r' ?(f|ht)tps?://\S*')


def _reliable_language(text: str) -> Optional[str]:
    if not text or not text.strip():
        return None
    try:
        candidates = detect_langs(text)
    except LangDetectException:
        return None
    if not candidates:
        return None

    best = candidates[0]
    if best.prob < RELIABLE_PROBABILITY:
        return None
    code = best.lang.split('-', 1)[0]
    return 'he' if code == 'iw' else code


def detect_language(description: str, title: str) -> Optional[str]:
    """
    ISO 639-1 code of the video's language, from the description without its
    links, falling back to the title. None when neither is reliable.
    """
    language = _reliable_language(_URLS.sub('', description or ''))
    if language is None:
        language = _reliable_language(title or '')
    logger.debug(f"detected language: {language}")
    return language
