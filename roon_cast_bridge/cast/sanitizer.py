"""
Shrinks playback payloads so they fit in a single receiver message.

Reductions run in a fixed order and each one only runs if the previous
ones were not enough:

1. collapse the three-line block to line 1 and the two-line block to lines 1-2
2. drop the text blocks entirely
3. keep at most two artist images
4. drop all artist images
5. drop the inline album art (``image_data``)

If nothing helps the reduced payload is returned anyway and a warning is
logged; the caller still sends it.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

_LOGGER = logging.getLogger(__name__)

TEXT_BLOCKS = ("one_line", "two_line", "three_line")
MAX_TRIMMED_ARTIST_IMAGES = 2


def encode_message(message: Dict[str, Any]) -> bytes:
    """Wire form of a custom-channel message."""
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def wrap(kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": str(kind), "payload": payload}


def message_size(kind: str, payload: Dict[str, Any]) -> int:
    return len(encode_message(wrap(kind, payload)))


# ---------------------------------------------------------------------------
# Reduction steps (mutate the private copy, return True if they changed it)
# ---------------------------------------------------------------------------

def _collapse_text(payload: Dict[str, Any]) -> bool:
    now_playing = payload.get("now_playing")
    if not isinstance(now_playing, dict):
        return False

    changed = False
    three_line = now_playing.get("three_line")
    if isinstance(three_line, dict):
        collapsed = {"line1": three_line.get("line1") or ""}
        changed |= collapsed != three_line
        now_playing["three_line"] = collapsed

    two_line = now_playing.get("two_line")
    if isinstance(two_line, dict):
        collapsed = {
            "line1": two_line.get("line1") or "",
            "line2": two_line.get("line2") or "",
        }
        changed |= collapsed != two_line
        now_playing["two_line"] = collapsed

    return changed


def _drop_text(payload: Dict[str, Any]) -> bool:
    now_playing = payload.get("now_playing")
    if not isinstance(now_playing, dict):
        return False
    removed = [key for key in TEXT_BLOCKS if key in now_playing]
    for key in removed:
        del now_playing[key]
    return bool(removed)


def _trim_artist_images(payload: Dict[str, Any]) -> bool:
    images = payload.get("artist_images")
    if not isinstance(images, list) or len(images) <= MAX_TRIMMED_ARTIST_IMAGES:
        return False
    _LOGGER.info(
        "Trimming artist_images from %d to %d", len(images), MAX_TRIMMED_ARTIST_IMAGES
    )
    payload["artist_images"] = images[:MAX_TRIMMED_ARTIST_IMAGES]
    return True


def _clear_artist_images(payload: Dict[str, Any]) -> bool:
    images = payload.get("artist_images")
    if not images:
        return False
    payload["artist_images"] = []
    return True


def _drop_inline_art(payload: Dict[str, Any]) -> bool:
    if "image_data" not in payload:
        return False
    del payload["image_data"]
    return True


_STEPS: List[Tuple[str, Callable[[Dict[str, Any]], bool]]] = [
    ("collapsed metadata", _collapse_text),
    ("removed metadata", _drop_text),
    ("trimmed artist_images", _trim_artist_images),
    ("removed all artist_images", _clear_artist_images),
    ("removed image_data", _drop_inline_art),
]


def sanitize(kind: str, payload: Optional[Dict[str, Any]], limit: int) -> Dict[str, Any]:
    """Return a copy of ``payload`` whose wrapped message fits in ``limit`` bytes.

    The input is never modified.
    """
    if not payload:
        return {}

    clone = copy.deepcopy(payload)
    size = message_size(kind, clone)
    if size <= limit:
        return clone

    _LOGGER.info("Payload too large: %d bytes (limit %d), trimming", size, limit)

    for description, step in _STEPS:
        if not step(clone):
            continue
        size = message_size(kind, clone)
        if size <= limit:
            _LOGGER.info("%s, payload now %d bytes", description.capitalize(), size)
            return clone

    _LOGGER.warning("Payload remains large after trimming: %d bytes", size)
    return clone
