"""Settings persistence for the AirSync CLI.

Stores the defaults a user would otherwise repeat on every invocation
(receiver URL, audio devices, lead time). Settings are loaded from disk and
saved with debouncing; command-line flags override stored values and are
written back.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, ClassVar

logger = logging.getLogger(__name__)

# Debounce delay for saving settings
SAVE_DEBOUNCE_SECONDS = 60.0

SETTINGS_FILENAME = "settings.json"


@dataclass
class Settings:
    """Persisted CLI defaults.

    Changes are debounced and saved after 60 seconds of inactivity,
    or immediately on flush().
    """

    receiver_url: str | None = None
    input_device: str | None = None
    output_device: str | None = None
    lead_time_ms: int | None = None
    log_level: str | None = None
    hook: str | None = None

    # Internal state (not serialized)
    _settings_file: Path | None = field(default=None, repr=False, compare=False)
    _debounce_save_handle: asyncio.TimerHandle | None = field(
        default=None, repr=False, compare=False
    )

    _internal_fields: ClassVar[set[str]] = {"_settings_file", "_debounce_save_handle"}

    @property
    def settings_file(self) -> Path | None:
        """Where the settings are stored."""
        return self._settings_file

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to a dictionary for serialization."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._internal_fields
        }

    def update(
        self,
        *,
        receiver_url: str | None = None,
        input_device: str | None = None,
        output_device: str | None = None,
        lead_time_ms: int | None = None,
        log_level: str | None = None,
        hook: str | None = None,
    ) -> None:
        """Update settings fields. Only changed fields trigger a save."""
        if lead_time_ms is not None:
            lead_time_ms = max(0, lead_time_ms)

        changed = False
        for field_name, value in {
            "receiver_url": receiver_url,
            "input_device": input_device,
            "output_device": output_device,
            "lead_time_ms": lead_time_ms,
            "log_level": log_level,
            "hook": hook,
        }.items():
            if value is not None and getattr(self, field_name) != value:
                setattr(self, field_name, value)
                changed = True

        if changed:
            self._schedule_save()

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
        if self._debounce_save_handle is not None:
            self._debounce_save_handle.cancel()

        loop = asyncio.get_running_loop()
        self._debounce_save_handle = loop.call_later(
            SAVE_DEBOUNCE_SECONDS, self._debounced_save, loop
        )

    def _debounced_save(self, loop: asyncio.AbstractEventLoop) -> None:
        self._debounce_save_handle = None
        loop.run_in_executor(None, self._save)

    def _load(self) -> None:
        """Load settings from the settings file (blocking I/O)."""
        if self._settings_file is None or not self._settings_file.exists():
            logger.debug("Settings file does not exist: %s", self._settings_file)
            return

        try:
            data = json.loads(self._settings_file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load settings from %s: %s", self._settings_file, e)
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring settings file %s: not a JSON object", self._settings_file)
            return

        self.receiver_url = data.get("receiver_url")
        self.input_device = data.get("input_device")
        self.output_device = data.get("output_device")
        self.lead_time_ms = data.get("lead_time_ms")
        self.log_level = data.get("log_level")
        self.hook = data.get("hook")
        logger.info("Loaded settings from %s", self._settings_file)

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


def default_config_dir() -> Path:
    """Return ~/.config/airsync."""
    return Path.home() / ".config" / "airsync"


async def get_settings(config_dir: str | None = None) -> Settings:
    """Create and load CLI settings.

    Args:
        config_dir: Optional directory to store settings. Defaults to ~/.config/airsync.

    Returns:
        Settings instance with values loaded from disk.
    """
    config_path = Path(config_dir) if config_dir else default_config_dir()
    settings = Settings(_settings_file=config_path / SETTINGS_FILENAME)
    await settings.load()
    return settings
