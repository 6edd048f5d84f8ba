"""Local settings persistence for the rally client.

These settings belong to one client only (volumes, which players to call
out, the rally length picked in the UI) and are never part of room state.
Settings are loaded from disk on startup and saved with debouncing.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, ClassVar, Optional

logger = logging.getLogger(__name__)

# Debounce delay for saving settings
SAVE_DEBOUNCE_SECONDS = 5.0

RALLY_MINUTE_CHOICES = (5, 10)


def _clamp_level(value: int) -> int:
    return max(0, min(100, int(value)))


@dataclass
class LocalSettings:
    """Per-client preferences.

    Changes are debounced and saved after a few seconds of inactivity,
    or immediately on flush().
    """

    beep_level: int = 70
    voice_level: int = 80
    selected_ids: list[str] = field(default_factory=list)
    voice_enabled: bool = True
    rally_calls: bool = True
    march_calls: bool = False
    rally_minutes: int = 5
    pre_delay_seconds: int = 10

    # Internal state (not serialized)
    _settings_file: Optional[Path] = field(default=None, repr=False, compare=False)
    _debounce_save_handle: Optional[asyncio.TimerHandle] = field(
        default=None, repr=False, compare=False
    )

    _internal_fields: ClassVar[set[str]] = {"_settings_file", "_debounce_save_handle"}

    # ---- Derived values ------------------------------------------------------

    @property
    def rally_duration_ms(self) -> int:
        return self.rally_minutes * 60 * 1000

    @property
    def pre_delay_ms(self) -> int:
        return max(0, self.pre_delay_seconds) * 1000

    @property
    def beep_gain_factor(self) -> float:
        return _clamp_level(self.beep_level) / 100

    @property
    def voice_volume(self) -> float:
        return _clamp_level(self.voice_level) / 100

    # ---- Mutation ------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to a dictionary for serialization."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._internal_fields
        }

    def _update_fields(self, updates: dict[str, Any]) -> bool:
        """Update fields and return whether any changed."""
        changed = False
        for field_name, value in updates.items():
            if value is not None and getattr(self, field_name) != value:
                setattr(self, field_name, value)
                changed = True
        return changed

    def update(
        self,
        *,
        beep_level: Optional[int] = None,
        voice_level: Optional[int] = None,
        voice_enabled: Optional[bool] = None,
        rally_calls: Optional[bool] = None,
        march_calls: Optional[bool] = None,
        rally_minutes: Optional[int] = None,
        pre_delay_seconds: Optional[int] = None,
    ) -> None:
        """Update settings fields. Only changed fields trigger a save."""
        if rally_minutes is not None and rally_minutes not in RALLY_MINUTE_CHOICES:
            raise ValueError(f"Rally length must be one of {RALLY_MINUTE_CHOICES} minutes")
        if pre_delay_seconds is not None and pre_delay_seconds < 0:
            raise ValueError("Pre-delay cannot be negative")

        changed = self._update_fields(
            {
                "beep_level": _clamp_level(beep_level) if beep_level is not None else None,
                "voice_level": _clamp_level(voice_level) if voice_level is not None else None,
                "voice_enabled": voice_enabled,
                "rally_calls": rally_calls,
                "march_calls": march_calls,
                "rally_minutes": rally_minutes,
                "pre_delay_seconds": pre_delay_seconds,
            }
        )
        if changed:
            self._schedule_save()

    def toggle_selected(self, player_id: str) -> bool:
        """Flip whether calls are made for this player. Returns the new state."""
        if player_id in self.selected_ids:
            self.selected_ids = [i for i in self.selected_ids if i != player_id]
            selected = False
        else:
            self.selected_ids = [*self.selected_ids, player_id]
            selected = True
        self._schedule_save()
        return selected

    # ---- Persistence ---------------------------------------------------------

    async def load(self) -> None:
        """Load settings from disk."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._load)

    async def flush(self) -> None:
        """Immediately save any pending changes to disk."""
        if self._debounce_save_handle is not None:
            self._debounce_save_handle.cancel()
            self._debounce_save_handle = None
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._save)

    def _schedule_save(self) -> None:
        """Schedule a debounced save operation."""
        if self._settings_file is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (plain scripts); write through
            self._save()
            return
        if self._debounce_save_handle is not None:
            self._debounce_save_handle.cancel()
        self._debounce_save_handle = loop.call_later(
            SAVE_DEBOUNCE_SECONDS, self._debounced_save, loop
        )

    def _debounced_save(self, loop: asyncio.AbstractEventLoop) -> None:
        """Called by the timer to save settings in executor."""
        self._debounce_save_handle = None
        loop.run_in_executor(None, self._save)

    def _load(self) -> None:
        """Load settings from the settings file (blocking I/O)."""
        if self._settings_file is None or not self._settings_file.exists():
            logger.debug("Settings file does not exist: %s", self._settings_file)
            return

        try:
            data = json.loads(self._settings_file.read_text())
            if not isinstance(data, dict):
                raise ValueError("settings root is not an object")
            self.beep_level = _clamp_level(data.get("beep_level", 70))
            self.voice_level = _clamp_level(data.get("voice_level", 80))
            selected = data.get("selected_ids", [])
            self.selected_ids = [i for i in selected if isinstance(i, str)] if isinstance(selected, list) else []
            self.voice_enabled = bool(data.get("voice_enabled", True))
            self.rally_calls = bool(data.get("rally_calls", True))
            self.march_calls = bool(data.get("march_calls", False))
            minutes = data.get("rally_minutes", 5)
            self.rally_minutes = minutes if minutes in RALLY_MINUTE_CHOICES else 5
            self.pre_delay_seconds = max(0, int(data.get("pre_delay_seconds", 10)))
            logger.info(
                "Loaded settings from %s: beep=%d%%, voice=%d%%, rally=%dmin",
                self._settings_file,
                self.beep_level,
                self.voice_level,
                self.rally_minutes,
            )
        except (json.JSONDecodeError, OSError, TypeError, ValueError) as e:
            logger.warning("Failed to load settings from %s: %s", self._settings_file, e)

    def _save(self) -> None:
        """Save settings to the settings file (blocking I/O)."""
        if self._settings_file is None:
            return
        try:
            self._settings_file.parent.mkdir(parents=True, exist_ok=True)
            self._settings_file.write_text(json.dumps(self.to_dict(), indent=2) + "\n")
            logger.debug("Saved settings to %s", self._settings_file)
        except OSError as e:
            logger.warning("Failed to save settings to %s: %s", self._settings_file, e)


async def get_local_settings(path: Optional[str] = None) -> LocalSettings:
    """Create and load the client's local settings.

    Args:
        path: Optional settings file. Defaults to ~/.config/rally-sync/settings.json.

    Returns:
        LocalSettings instance with settings loaded from disk.
    """
    settings_file = Path(path) if path else Path.home() / ".config" / "rally-sync" / "settings.json"
    settings = LocalSettings(_settings_file=settings_file)
    await settings.load()
    return settings
