"""Shared state models."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

_LOGGER = logging.getLogger(__name__)


@dataclass
class Preferences:
    """Selections that survive a restart."""
    selected_zone_id: Optional[str] = None
    selected_receiver_id: Optional[str] = None


class PreferencesStore:
    """Loads and saves :class:`Preferences` as JSON.

    Neither direction ever raises: a missing or unreadable file yields
    defaults and a failed write is only logged.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.preferences = Preferences()

    def load(self) -> Preferences:
        if not self.path.exists():
            _LOGGER.debug("No preferences at %s; using defaults", self.path)
            self.preferences = Preferences()
            return self.preferences

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            known = {f.name for f in fields(Preferences)}
            self.preferences = Preferences(
                **{k: v for k, v in raw.items() if k in known}
            )
        except (OSError, ValueError, TypeError, AttributeError) as e:
            _LOGGER.warning("Failed to load preferences from %s: %s", self.path, e)
            self.preferences = Preferences()

        return self.preferences

    def save(self) -> None:
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(asdict(self.preferences), f, indent=2)
            _LOGGER.debug("Saved preferences to %s", self.path)
        except OSError as e:
            _LOGGER.error("Failed to save preferences to %s: %s", self.path, e)

    def update(self, **changes: Optional[str]) -> None:
        """Apply changes and persist them if anything differs."""
        changed = False
        for key, value in changes.items():
            if getattr(self.preferences, key) != value:
                setattr(self.preferences, key, value)
                changed = True
        if changed:
            self.save()
