"""
ADB Manager - Core module for Android Debug Bridge operations
Handles connection to the emulator and the tap / swipe / screencap primitives
"""

import os
import platform
import re
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from ..utils.logger import get_logger
from ..utils.device_persistence import DevicePersistence

logger = get_logger(__name__)

_SIZE_RE = re.compile(r"(Physical|Override) size:\s*(\d+)x(\d+)")


@dataclass
class DeviceSession:
    """The one bound automation target"""
    connected: bool = False
    device_id: Optional[str] = None
    width: int = 0
    height: int = 0
    consecutive_failures: int = 0

    @property
    def screen_size(self) -> Optional[Tuple[int, int]]:
        if self.width and self.height:
            return self.width, self.height
        return None


def parse_screen_size(output: str) -> Optional[Tuple[int, int]]:
    """
    Parse `wm size` output; an override size wins over the physical size

    >>> parse_screen_size("Physical size: 1080x1920\\nOverride size: 720x1280")
    (720, 1280)
    """
    sizes = {kind: (int(w), int(h)) for kind, w, h in _SIZE_RE.findall(output or '')}
    return sizes.get('Override') or sizes.get('Physical')


def parse_devices_output(output: str) -> List[str]:
    """Device ids in state 'device' from `adb devices` output"""
    devices = []
    for line in (output or '').strip().splitlines()[1:]:  # Skip header
        parts = line.split()
        if len(parts) >= 2 and parts[1] == 'device':
            devices.append(parts[0])
    return devices


class ADBManager:
    """
    Manages the ADB connection and input/capture operations for one emulator

    Transport errors never escape a device operation: they are logged and turned
    into False / None, and counted. After `max_consecutive_failures` failures in
    a row the session is marked disconnected.
    """

    def __init__(self, adb_path: Optional[str] = None, timeout: int = 30,
                 screenshot_timeout: int = 10,
                 preferred_device: Optional[str] = None,
                 tcp_fallback_addresses: Optional[List[str]] = None,
                 max_consecutive_failures: int = 5,
                 persistence: Optional[DevicePersistence] = None):
        """
        Initialize ADB Manager

        Args:
            adb_path: Optional path to ADB executable. If None, will auto-detect.
            timeout: Default timeout for ADB operations in seconds
            screenshot_timeout: Timeout for screencap in seconds
            preferred_device: Device id to prefer when several are attached
            tcp_fallback_addresses: host:port pairs to `adb connect` when nothing is listed
            max_consecutive_failures: Failures in a row before the session is dropped
            persistence: Store for the last device that connected
        """
        self.timeout = timeout
        self.screenshot_timeout = screenshot_timeout
        self.preferred_device = preferred_device
        self.tcp_fallback_addresses = list(tcp_fallback_addresses or ['127.0.0.1:5555'])
        self.max_consecutive_failures = max(1, max_consecutive_failures)
        self.persistence = persistence or DevicePersistence()
        self.session = DeviceSession()
        self._lock = threading.Lock()
        self.adb_path: Optional[str] = adb_path
        self._find_adb()

    @classmethod
    def from_settings(cls, settings, persistence: Optional[DevicePersistence] = None) -> 'ADBManager':
        """Build from an ADBSettings block of the application config"""
        return cls(
            adb_path=settings.adb_path,
            timeout=settings.timeout,
            screenshot_timeout=settings.screenshot_timeout,
            preferred_device=settings.preferred_device,
            tcp_fallback_addresses=settings.tcp_fallback_addresses,
            max_consecutive_failures=settings.max_consecutive_failures,
            persistence=persistence,
        )

    # ------------------------------------------------------------------
    # ADB binary
    # ------------------------------------------------------------------

    def _find_adb(self) -> None:
        """
        Find ADB executable.
        Search order: configured path, system PATH, Android SDK platform-tools,
        emulator-bundled adb (LDPlayer, BlueStacks, MuMu, Nox).
        """
        if self.adb_path:
            adb_file = Path(self.adb_path)
            if adb_file.is_file():
                self.adb_path = str(adb_file.absolute())
                logger.info(f"Using provided ADB path: {self.adb_path}")
                return
            logger.warning(f"Provided ADB path does not exist: {self.adb_path}, will search for ADB")
            self.adb_path = None

        on_path = shutil.which('adb')
        if on_path:
            self.adb_path = on_path
            logger.info(f"ADB found in PATH: {on_path}")
            return

        if platform.system() == 'Windows':
            local_appdata = os.getenv('LOCALAPPDATA', '')
            program_files = os.getenv('ProgramFiles', '')
            program_files_x86 = os.getenv('ProgramFiles(x86)', '')
            search_paths = [
                Path(local_appdata) / 'Android' / 'Sdk' / 'platform-tools' / 'adb.exe',
                Path(program_files) / 'Android' / 'android-sdk' / 'platform-tools' / 'adb.exe',
                Path(program_files) / 'LDPlayer' / 'adb.exe',
                Path(program_files) / 'LDPlayer9' / 'adb.exe',
                Path(program_files) / 'BlueStacks_nxt' / 'HD-Adb.exe',
                Path(program_files_x86) / 'BlueStacks_nxt' / 'HD-Adb.exe',
                Path(program_files) / 'Netease' / 'MuMuPlayer' / 'shell' / 'adb.exe',
                Path(program_files) / 'Nox' / 'bin' / 'nox_adb.exe',
            ]
        else:
            home = os.getenv('HOME', '')
            search_paths = [
                Path(home) / 'Android' / 'Sdk' / 'platform-tools' / 'adb',
                Path(home) / 'Library' / 'Android' / 'sdk' / 'platform-tools' / 'adb',
                Path('/opt/android-sdk/platform-tools/adb'),
                Path('/usr/local/bin/adb'),
            ]

        for adb_file in search_paths:
            if adb_file.is_file():
                self.adb_path = str(adb_file.absolute())
                logger.info(f"ADB found at: {self.adb_path}")
                return

        logger.debug("ADB not found in common locations, falling back to 'adb'")

    def _get_adb_command(self, args: List[str]) -> List[str]:
        """Build ADB command with proper path"""
        return [self.adb_path or 'adb'] + args

    def _run_adb(self, args: List[str], timeout: Optional[float] = None,
                 binary: bool = False) -> Optional[subprocess.CompletedProcess]:
        """
        Run one adb invocation

        Returns:
            The completed process, or None when adb could not be executed or timed out
        """
        cmd = self._get_adb_command(args)
        try:
            return subprocess.run(cmd, capture_output=True, text=not binary,
                                  timeout=timeout or self.timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"ADB command timeout: {' '.join(cmd)}")
        except OSError as e:
            logger.error(f"ADB command could not run: {' '.join(cmd)}, error: {e}")
        return None

    def check_adb_available(self) -> bool:
        """Check if ADB is available"""
        result = self._run_adb(['version'], timeout=10)
        if result is not None and result.returncode == 0:
            version = result.stdout.strip().splitlines()[0] if result.stdout.strip() else 'unknown'
            logger.info(f"ADB available: {version} at {self.adb_path or 'PATH'}")
            return True
        logger.error("ADB not found. Install Android SDK Platform Tools or set adb.adb_path in the config.")
        return False

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def get_connected_devices(self) -> List[str]:
        """Get list of connected Android devices/emulators"""
        result = self._run_adb(['devices'])
        if result is None or result.returncode != 0:
            return []
        devices = parse_devices_output(result.stdout)
        logger.debug(f"Found {len(devices)} connected device(s): {devices}")
        return devices

    def _connect_tcp(self, address: str) -> bool:
        """`adb connect host:port`; True when adb reports it connected"""
        logger.info(f"Connecting to device via ADB: {address}")
        result = self._run_adb(['connect', address], timeout=15)
        if result is None:
            return False
        output = (result.stdout or '').lower()
        return result.returncode == 0 and 'connected' in output and 'cannot' not in output

    def _choose_device(self, devices: List[str], preferred: Optional[str]) -> Optional[str]:
        for candidate in (preferred, self.preferred_device, self.persistence.last_device()):
            if candidate and candidate in devices:
                return candidate
        return devices[0] if devices else None

    def query_screen_size(self, device_id: str) -> Optional[Tuple[int, int]]:
        result = self._run_adb(['-s', device_id, 'shell', 'wm', 'size'])
        if result is None or result.returncode != 0:
            return None
        return parse_screen_size(result.stdout)

    def connect(self, preferred: Optional[str] = None) -> bool:
        """
        Bind to a device and read its resolution

        Args:
            preferred: Device id to use when it is attached

        Returns:
            True when the session is populated, False otherwise
        """
        if not self.check_adb_available():
            return False

        devices = self.get_connected_devices()

        # A preferred TCP device that is not yet attached can be connected directly
        if preferred and preferred not in devices and ':' in preferred:
            if self._connect_tcp(preferred):
                devices = self.get_connected_devices()

        if not devices:
            for address in self.tcp_fallback_addresses:
                if self._connect_tcp(address):
                    devices = self.get_connected_devices()
                    if devices:
                        break

        device_id = self._choose_device(devices, preferred)
        if not device_id:
            logger.error("No devices found. Make sure your emulator is running with ADB enabled.")
            return False

        size = self.query_screen_size(device_id)
        if not size:
            logger.error(f"Could not read screen size of {device_id}")
            return False

        with self._lock:
            self.session = DeviceSession(connected=True, device_id=device_id,
                                         width=size[0], height=size[1])
        self.persistence.remember(device_id)
        logger.info(f"Connected to {device_id} ({size[0]}x{size[1]})")
        return True

    def disconnect(self) -> None:
        """Forget the current device; TCP devices are also `adb disconnect`ed"""
        device_id = self.session.device_id
        if device_id and ':' in device_id:
            result = self._run_adb(['disconnect', device_id], timeout=10)
            if result is not None and result.returncode == 0:
                logger.info(f"Disconnected from {device_id}")
        with self._lock:
            self.session = DeviceSession()

    @property
    def connected(self) -> bool:
        return self.session.connected

    @property
    def device_id(self) -> Optional[str]:
        return self.session.device_id

    @property
    def screen_size(self) -> Optional[Tuple[int, int]]:
        return self.session.screen_size

    # ------------------------------------------------------------------
    # Failure accounting
    # ------------------------------------------------------------------

    def _record_success(self) -> None:
        with self._lock:
            self.session.consecutive_failures = 0

    def _record_failure(self, what: str) -> None:
        with self._lock:
            self.session.consecutive_failures += 1
            failures = self.session.consecutive_failures
            if self.session.connected and failures >= self.max_consecutive_failures:
                self.session.connected = False
                logger.warning(
                    f"{failures} consecutive ADB failures (last: {what}); "
                    f"marking {self.session.device_id} as disconnected"
                )

    def _device_call(self, args: List[str], what: str, timeout: Optional[float] = None,
                     binary: bool = False) -> Optional[subprocess.CompletedProcess]:
        """Run a device-targeted command with failure accounting"""
        if not self.session.connected or not self.session.device_id:
            logger.error(f"{what}: not connected to any device")
            return None
        result = self._run_adb(['-s', self.session.device_id] + args, timeout=timeout, binary=binary)
        if result is None or result.returncode != 0:
            if result is not None:
                stderr = result.stderr.decode(errors='replace') if binary else result.stderr
                logger.warning(f"{what} failed (rc={result.returncode}): {(stderr or '').strip()[:200]}")
            self._record_failure(what)
            return None
        self._record_success()
        return result

    # ------------------------------------------------------------------
    # Input and capture
    # ------------------------------------------------------------------

    def to_pixels(self, x_percent: float, y_percent: float) -> Tuple[int, int]:
        """Percentages of the screen to device pixels; no clamping"""
        return round(x_percent * self.session.width), round(y_percent * self.session.height)

    def tap(self, x: int, y: int) -> bool:
        """
        Tap at specific coordinates on the device screen

        Returns:
            True if tap command succeeded, False otherwise
        """
        result = self._device_call(['shell', 'input', 'tap', str(int(x)), str(int(y))], f"tap({x}, {y})")
        if result is not None:
            logger.debug(f"Tapped at ({x}, {y})")
        return result is not None

    def tap_percent(self, x_percent: float, y_percent: float) -> bool:
        x, y = self.to_pixels(x_percent, y_percent)
        return self.tap(x, y)

    def swipe(self, x1: int, y1: int, x2: int, y2: int, duration_ms: int = 300) -> bool:
        result = self._device_call(
            ['shell', 'input', 'swipe', str(int(x1)), str(int(y1)), str(int(x2)), str(int(y2)),
             str(int(duration_ms))],
            f"swipe({x1}, {y1} -> {x2}, {y2})"
        )
        return result is not None

    def capture_screenshot(self) -> Optional[bytes]:
        """
        Fresh full-frame capture

        Returns:
            PNG bytes, or None on failure
        """
        result = self._device_call(['exec-out', 'screencap', '-p'], "screencap",
                                   timeout=self.screenshot_timeout, binary=True)
        if result is None:
            return None
        if not result.stdout:
            logger.warning("screencap returned no data")
            self._record_failure("screencap")
            return None
        return result.stdout

    def save_debug_screenshot(self, name: str = "debug_screenshot",
                              directory: str = "screenshots") -> Optional[Path]:
        """Capture a frame and write it to `directory/<name>_<timestamp>.png`"""
        data = self.capture_screenshot()
        if data is None:
            return None
        out_dir = Path(directory)
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            path = out_dir / f"{name}_{time.strftime('%Y%m%d_%H%M%S')}.png"
            path.write_bytes(data)
        except OSError as e:
            logger.error(f"Could not save screenshot to {out_dir}: {e}")
            return None
        logger.info(f"Saved screenshot: {path}")
        return path

