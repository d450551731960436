"""
Device Persistence
Remembers the emulator that last connected so the next session picks it first
"""

import json
from pathlib import Path
from typing import List, Optional
from ..utils.logger import get_logger

logger = get_logger(__name__)

DEVICES_FILE = Path("config/saved_devices.json")


class DevicePersistence:
    """Keeps a most-recent-first list of device ids in a JSON file"""

    def __init__(self, devices_file: Path = DEVICES_FILE, max_entries: int = 10):
        """
        Args:
            devices_file: Path to the JSON file storing device IDs
            max_entries: How many ids to keep
        """
        self.devices_file = Path(devices_file)
        self.max_entries = max_entries

    def remember(self, device_id: str) -> bool:
        """
        Move a device ID to the front of the saved list

        Returns:
            True if saved successfully, False otherwise
        """
        try:
            devices = [d for d in self.load_devices() if d != device_id]
            devices.insert(0, device_id)
            devices = devices[:self.max_entries]

            self.devices_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.devices_file, 'w', encoding='utf-8') as f:
                json.dump(devices, f, indent=2)

            logger.debug(f"Remembered device {device_id} ({len(devices)} saved)")
            return True

        except OSError as e:
            logger.error(f"Error saving device {device_id}: {e}")
            return False

    def load_devices(self) -> List[str]:
        """Saved device IDs, most recent first"""
        if not self.devices_file.exists():
            return []
        try:
            with open(self.devices_file, 'r', encoding='utf-8') as f:
                devices = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading devices: {e}")
            return []

        if not isinstance(devices, list):
            logger.warning("Invalid devices file format, ignoring it")
            return []
        return [str(d) for d in devices]

    def last_device(self) -> Optional[str]:
        devices = self.load_devices()
        return devices[0] if devices else None

    def forget(self, device_id: str) -> bool:
        """Remove a device ID; False when it was not saved"""
        devices = self.load_devices()
        if device_id not in devices:
            return False
        devices.remove(device_id)
        try:
            with open(self.devices_file, 'w', encoding='utf-8') as f:
                json.dump(devices, f, indent=2)
        except OSError as e:
            logger.error(f"Error removing device {device_id}: {e}")
            return False
        logger.info(f"Forgot device: {device_id}")
        return True
