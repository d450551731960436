"""
Configuration management for the COC farm bot
Handles loading and managing configuration from YAML files and environment variables
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, asdict, field
from dotenv import load_dotenv

from ..utils.logger import get_logger
from ..utils.exceptions import ConfigurationError

logger = get_logger(__name__)

# Load environment variables
load_dotenv()

DEFAULT_CONFIG_FILE = "config/bot_config.yaml"


@dataclass
class ADBSettings:
    """ADB configuration settings"""
    adb_path: Optional[str] = None
    preferred_device: Optional[str] = None
    timeout: int = 30
    screenshot_timeout: int = 10
    max_consecutive_failures: int = 5
    tcp_fallback_addresses: list = None

    def __post_init__(self):
        if self.tcp_fallback_addresses is None:
            self.tcp_fallback_addresses = ['127.0.0.1:5555']


@dataclass
class OCRSettings:
    """Tesseract configuration"""
    tesseract_cmd: Optional[str] = None
    language: str = 'eng'
    debug_directory: str = 'debug_victory'


@dataclass
class GatewaySettings:
    """Operator channel configuration"""
    host: str = 'localhost'
    port: int = 8765
    status_interval_s: float = 3.0
    log_window: int = 100


@dataclass
class LoggingSettings:
    """Logging configuration"""
    level: str = 'INFO'
    detailed_format: bool = False


@dataclass
class BotSettings:
    """Main bot configuration"""
    adb: ADBSettings
    ocr: OCRSettings
    gateway: GatewaySettings
    logging: LoggingSettings

    # Run configuration defaults, external naming (see core.run_config)
    run: Dict[str, Any] = field(default_factory=dict)

    screenshot_directory: str = "screenshots"


_SECTIONS = ('adb', 'ocr', 'gateway', 'logging')


class ConfigManager:
    """
    Configuration manager for the COC farm bot
    Handles loading, validation, and access to configuration settings
    """

    def __init__(self, config_file: str = DEFAULT_CONFIG_FILE, create_default: bool = True):
        """
        Initialize configuration manager

        Args:
            config_file: Path to the configuration file
            create_default: Write a default file when none exists
        """
        self.config_file = Path(config_file)
        self.create_default = create_default
        self.config: Optional[BotSettings] = None
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from file and environment variables"""
        try:
            config_data = self._get_default_config()

            if self.config_file.exists():
                logger.info(f"Loading configuration from {self.config_file}")
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    file_config = yaml.safe_load(f) or {}
                if not isinstance(file_config, dict):
                    raise ConfigurationError(f"{self.config_file} must contain a mapping")
                config_data = self._merge_configs(config_data, file_config)
            else:
                logger.info("No configuration file found, using defaults")
                if self.create_default:
                    self._create_default_config_file()

            config_data = self._apply_environment_overrides(config_data)

            self.config = BotSettings(
                adb=ADBSettings(**config_data.get('adb', {})),
                ocr=OCRSettings(**config_data.get('ocr', {})),
                gateway=GatewaySettings(**config_data.get('gateway', {})),
                logging=LoggingSettings(**config_data.get('logging', {})),
                **{k: v for k, v in config_data.items() if k not in _SECTIONS}
            )

            logger.info("Configuration loaded successfully")

        except ConfigurationError:
            raise
        except (OSError, yaml.YAMLError, TypeError, ValueError) as e:
            logger.error(f"Error loading configuration: {e}")
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration values"""
        return {
            'adb': {},
            'ocr': {},
            'gateway': {},
            'logging': {},
            'run': {},
            'screenshot_directory': 'screenshots'
        }

    def _merge_configs(self, base: Dict, override: Dict) -> Dict:
        """Recursively merge configuration dictionaries"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            elif value is not None:
                result[key] = value

        return result

    def _apply_environment_overrides(self, config_data: Dict) -> Dict:
        """Apply environment variable overrides"""
        # ADB settings
        if os.getenv('COCBOT_ADB_PATH'):
            config_data['adb']['adb_path'] = os.getenv('COCBOT_ADB_PATH')
        if os.getenv('COCBOT_DEVICE'):
            config_data['adb']['preferred_device'] = os.getenv('COCBOT_DEVICE')

        # OCR settings
        if os.getenv('TESSERACT_CMD'):
            config_data['ocr']['tesseract_cmd'] = os.getenv('TESSERACT_CMD')

        # Gateway settings
        if os.getenv('COCBOT_WS_HOST'):
            config_data['gateway']['host'] = os.getenv('COCBOT_WS_HOST')
        if os.getenv('COCBOT_WS_PORT'):
            try:
                config_data['gateway']['port'] = int(os.getenv('COCBOT_WS_PORT'))
            except ValueError as e:
                raise ConfigurationError(f"COCBOT_WS_PORT must be an integer: {e}") from e

        # Logging settings
        if os.getenv('COCBOT_LOG_LEVEL'):
            config_data['logging']['level'] = os.getenv('COCBOT_LOG_LEVEL')

        return config_data

    def _to_dict(self, settings: BotSettings) -> Dict[str, Any]:
        return {
            'adb': asdict(settings.adb),
            'ocr': asdict(settings.ocr),
            'gateway': asdict(settings.gateway),
            'logging': asdict(settings.logging),
            'run': dict(settings.run),
            'screenshot_directory': settings.screenshot_directory
        }

    def _create_default_config_file(self) -> None:
        """Create a default configuration file"""
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)

            default_config = self._to_dict(BotSettings(
                adb=ADBSettings(), ocr=OCRSettings(),
                gateway=GatewaySettings(), logging=LoggingSettings()
            ))

            with open(self.config_file, 'w', encoding='utf-8') as f:
                yaml.dump(default_config, f, default_flow_style=False, indent=2)

            logger.info(f"Created default configuration file: {self.config_file}")

        except OSError as e:
            logger.warning(f"Could not create default config file: {e}")

    def get_config(self) -> BotSettings:
        """Get the current configuration"""
        if self.config is None:
            raise ConfigurationError("Configuration not loaded")
        return self.config

    def get_adb_settings(self) -> ADBSettings:
        return self.get_config().adb

    def get_ocr_settings(self) -> OCRSettings:
        return self.get_config().ocr

    def get_gateway_settings(self) -> GatewaySettings:
        return self.get_config().gateway

    def get_logging_settings(self) -> LoggingSettings:
        return self.get_config().logging

    def get_run_defaults(self) -> Dict[str, Any]:
        """Run-configuration overrides from the `run:` section, external naming"""
        return dict(self.get_config().run or {})

    def save_config(self) -> None:
        """Save current configuration to file"""
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w', encoding='utf-8') as f:
                yaml.dump(self._to_dict(self.get_config()), f, default_flow_style=False, indent=2)

            logger.info(f"Configuration saved to {self.config_file}")

        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error saving configuration: {e}")
            raise ConfigurationError(f"Failed to save configuration: {e}") from e

    def reload_config(self) -> None:
        """Force reload configuration from file"""
        logger.info("Force reloading configuration")
        self.config = None
        self._load_config()


# Global configuration manager instance, created on first use
_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_file: Optional[str] = None) -> ConfigManager:
    """
    Get the process-wide configuration manager

    Args:
        config_file: Path used when the manager is first created, or to replace it
    """
    global _config_manager
    if _config_manager is None or (config_file and Path(config_file) != _config_manager.config_file):
        _config_manager = ConfigManager(config_file or DEFAULT_CONFIG_FILE)
    return _config_manager
