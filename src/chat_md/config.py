"""Configuration management for chat-md."""

from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any, Optional
import toml
from loguru import logger

CONFIG_DIR = Path.home() / ".chat_md"
CONFIG_FILE = CONFIG_DIR / "config.toml"


@dataclass
class Settings:
    """Persisted export preferences."""
    download_images: bool = False
    output_dir: str = ""            # empty means current directory
    default_title: str = ""         # used when the page has no title
    encoding: str = "utf-8"
    request_timeout: Optional[float] = None   # seconds per image fetch, None waits forever

    @property
    def output_path(self) -> Path:
        """Get output directory as Path object."""
        return Path(self.output_dir).expanduser() if self.output_dir else Path.cwd()


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(f"Not a boolean: {value}")


class Config:
    """Manage user configuration in ~/.chat_md/config.toml."""

    def __init__(self, config_dir: Path = CONFIG_DIR):
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "config.toml"
        self._ensure_config_dir()

    def _ensure_config_dir(self):
        """Ensure config directory exists."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        logger.debug("Config directory: {}", self.config_dir)

    @property
    def log_dir(self) -> Path:
        return self.config_dir / "logs"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_file.exists()

    def load(self) -> dict:
        """Load configuration from file."""
        if not self.exists():
            logger.debug("Config file does not exist, returning empty config")
            return {}

        try:
            config_data = toml.load(self.config_file)
            logger.debug("Loaded config from {}", self.config_file)
            return config_data
        except (toml.TomlDecodeError, OSError) as e:
            logger.error("Failed to load config: {}", e)
            return {}

    def save(self, config_data: dict):
        """Save configuration to file."""
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                toml.dump(config_data, f)
            logger.debug("Saved config to {}", self.config_file)
        except OSError as e:
            logger.error("Failed to save config: {}", e)
            raise

    def get_settings(self) -> Settings:
        """Get export settings, ignoring unknown keys."""
        data = self.load().get('settings', {})
        known = {f.name for f in fields(Settings)}
        return Settings(**{key: value for key, value in data.items() if key in known})

    def save_settings(self, settings: Settings):
        """Save export settings."""
        data = self.load()
        # toml has no null, leave unset values out
        data['settings'] = {key: value for key, value in asdict(settings).items() if value is not None}
        self.save(data)
        logger.info("Settings saved")

    def set_value(self, key: str, value: str) -> Any:
        """Set a single setting from its string form and return the parsed value."""
        settings = self.get_settings()
        if key not in {f.name for f in fields(Settings)}:
            raise ValueError(f"Unknown setting: {key}")

        if key == 'download_images':
            parsed: Any = _parse_bool(value)
        elif key == 'request_timeout':
            parsed = float(value) if value.strip().lower() not in ('', 'none') else None
        else:
            parsed = value

        setattr(settings, key, parsed)
        self.save_settings(settings)
        logger.info("Setting updated: {} = {}", key, parsed)
        return parsed
