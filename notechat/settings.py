"""Persistent user settings: API credential and chat model name."""
import json
import os
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from notechat import config

logger = structlog.get_logger()


class Settings(BaseModel):
    """User-editable settings read on every provider call."""

    model_config = ConfigDict(validate_assignment=True)

    api_key: str = ""
    model_name: str = config.CHAT_MODEL


class SettingsStore:
    """JSON-file backed key/value store for :class:`Settings`.

    Loaded once at construction; every :meth:`update` is persisted before
    returning. The same ``Settings`` instance is mutated in place so that
    clients holding a reference pick up changes on their next call.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path or config.SETTINGS_PATH
        self.settings = self._load()

    def _load(self) -> Settings:
        if not self.path.exists():
            logger.info("settings_defaults_used", path=str(self.path))
            return Settings(api_key=config.OPENAI_API_KEY)

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            settings = Settings(**data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning("settings_load_failed", path=str(self.path), error=str(e))
            return Settings(api_key=config.OPENAI_API_KEY)

        if not settings.api_key:
            settings.api_key = config.OPENAI_API_KEY

        logger.info(
            "settings_loaded",
            path=str(self.path),
            model_name=settings.model_name,
            api_key_set=bool(settings.api_key),
        )
        return settings

    def save(self) -> None:
        """Write settings atomically (temp file + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self.settings.model_dump(), f, indent=2)
        os.replace(tmp_path, self.path)
        logger.info("settings_saved", path=str(self.path))

    def update(
        self, api_key: Optional[str] = None, model_name: Optional[str] = None
    ) -> Settings:
        """Apply the given changes and persist them.

        Args:
            api_key: New API credential (unchanged if None)
            model_name: New chat model name (unchanged if None)

        Returns:
            The live Settings instance
        """
        if api_key is not None:
            self.settings.api_key = api_key.strip()
        if model_name is not None:
            model_name = model_name.strip()
            if not model_name:
                raise ValueError("model_name cannot be empty")
            self.settings.model_name = model_name
        self.save()
        return self.settings
