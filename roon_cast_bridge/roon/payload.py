"""Pure helpers that turn Roon zone records into receiver payloads."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

_LOGGER = logging.getLogger(__name__)

MAX_ARTIST_IMAGES = 4


def build_payload(zone: Dict[str, Any], core_name: Optional[str]) -> Dict[str, Any]:
    now_playing = zone.get("now_playing") or None
    if now_playing:
        seek_position = now_playing.get("seek_position", zone.get("seek_position"))
    else:
        seek_position = 0

    outputs = zone.get("outputs")
    primary_output = outputs[0] if isinstance(outputs, list) and outputs else None

    return {
        "zone_id": zone.get("zone_id"),
        "zone_name": zone.get("display_name"),
        "core_name": core_name or "Unknown Core",
        "state": zone.get("state"),
        "seek_position": seek_position,
        "now_playing": now_playing,
        "output": {
            "output_id": primary_output.get("output_id"),
            "display_name": primary_output.get("display_name"),
            "volume": primary_output.get("volume") or None,
            "source_controls": primary_output.get("source_controls") or [],
        }
        if primary_output
        else None,
    }


def _lines(now_playing: Optional[dict]) -> tuple:
    three_line = (now_playing or {}).get("three_line") or {}
    return (three_line.get("line1"), three_line.get("line2"), three_line.get("line3"))


def track_changed(previous: Optional[dict], current: dict) -> bool:
    """Whether ``current`` shows a different track (or seek position) than ``previous``."""
    now_playing = current.get("now_playing")
    previous_now_playing = (previous or {}).get("now_playing")

    if now_playing and previous is None:
        return True
    if now_playing and previous_now_playing:
        return (
            _lines(previous_now_playing) != _lines(now_playing)
            or previous.get("seek_position") != current.get("seek_position")
        )
    if now_playing and not previous_now_playing:
        return True
    if not now_playing and previous_now_playing:
        return True
    return False


def same_track(a: Optional[dict], b: Optional[dict]) -> bool:
    if not a or not b:
        return False
    return a.get("zone_id") == b.get("zone_id") and _lines(a.get("now_playing")) == _lines(
        b.get("now_playing")
    )


def extract_artist_name(now_playing: Optional[dict]) -> Optional[str]:
    """Primary artist of the current track, preferring the explicit field."""
    if not now_playing:
        return None

    artist_name = now_playing.get("artist")
    if not artist_name:
        for block in ("three_line", "two_line", "one_line"):
            line2 = (now_playing.get(block) or {}).get("line2")
            if line2:
                artist_name = line2
                break

    if not artist_name:
        _LOGGER.debug("No artist found in now_playing")
        return None

    if " / " in artist_name:
        primary = artist_name.split(" / ")[0].strip()
        _LOGGER.debug("Multiple artists %r, using primary %r", artist_name, primary)
        return primary

    return artist_name


def merge_images(existing: List[str], extra: List[str], limit: int = MAX_ARTIST_IMAGES) -> List[str]:
    merged = [url for url in existing if url][:limit]
    for url in extra:
        if url and url not in merged:
            merged.append(url)
    return merged[:limit]


def image_cache_key(image_key: str, width: int, height: int, scale: str) -> str:
    return f"{image_key}:{width}x{height}:{scale}"
