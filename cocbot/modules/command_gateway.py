"""
Command Gateway - WebSocket channel between the run controller and the operator console

Protocol: JSON envelopes {"type", "payload", "timestamp"}
- Console -> bot: {"type": "command", "payload": {"action": "start", "params": {}}}
- Bot -> console: status / log / screenshot / stats / config events

One operator at a time; a second connection is refused with close code 1013.
Losing the operator does not stop the run loop; events are dropped until
someone reconnects (they are still logged and kept in the log window).
"""

import asyncio
import base64
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import websockets

from ..core.adb_manager import ADBManager
from ..core.coordinates import TEST_COORDS_POINT
from ..core.run_config import LiveRunConfig
from ..core.run_state import RunState
from ..modules.run_controller import RunController, TapTiming
from ..modules.statistics import SessionStatistics
from ..modules.vision_reader import VisionReader
from ..utils.exceptions import ConfigurationError, ProtocolError
from ..utils.log_buffer import LogBuffer, LogEntry
from ..utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_HOST = 'localhost'
DEFAULT_PORT = 8765
OPERATOR_BUSY_CODE = 1013
TEST_COORDS_WAIT = 2.0


def make_envelope(msg_type: str, payload: Any) -> str:
    return json.dumps({
        'type': msg_type,
        'payload': payload,
        'timestamp': int(time.time() * 1000),
    })


def parse_command(raw: Any) -> Tuple[str, Dict[str, Any]]:
    """
    Validate a console message

    Returns:
        (action, params)

    Raises:
        ProtocolError: not a well-formed command envelope
    """
    if isinstance(raw, bytes):
        raw = raw.decode('utf-8', errors='replace')
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("message must be a JSON object")
    if data.get('type') != 'command':
        raise ProtocolError(f"unsupported message type: {data.get('type')!r}")
    payload = data.get('payload')
    if not isinstance(payload, dict):
        raise ProtocolError("command payload must be an object")
    action = payload.get('action')
    if not isinstance(action, str) or not action:
        raise ProtocolError("command action missing")
    params = payload.get('params')
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise ProtocolError("command params must be an object")
    return action, params


def _number(params: Dict[str, Any], *keys: str) -> Optional[Tuple[float, float]]:
    """First key pair present in params, as floats"""
    for x_key, y_key in zip(keys[::2], keys[1::2]):
        if x_key in params and y_key in params:
            try:
                x, y = params[x_key], params[y_key]
                if isinstance(x, bool) or isinstance(y, bool):
                    raise TypeError("booleans are not coordinates")
                return float(x), float(y)
            except (TypeError, ValueError) as e:
                raise ProtocolError(f"bad tap coordinates: {e}") from e
    return None


class CommandGateway:
    """
    Owns the run loop task and serves one operator connection
    """

    def __init__(self, adb: ADBManager, vision: VisionReader,
                 config: Optional[LiveRunConfig] = None,
                 stats: Optional[SessionStatistics] = None,
                 host: str = DEFAULT_HOST, port: int = DEFAULT_PORT,
                 status_interval: float = 3.0, log_window: int = 100,
                 timing: TapTiming = TapTiming(),
                 screenshot_directory: str = 'screenshots'):
        self.adb = adb
        self.vision = vision
        self.config = config or LiveRunConfig()
        self.stats = stats or SessionStatistics()
        self.host = host
        self.port = port
        self.status_interval = status_interval
        self.screenshot_directory = screenshot_directory
        self.state = RunState()
        self.log_buffer = LogBuffer(log_window)
        self.controller = RunController(
            adb, vision, self.config, self.stats, state=self.state, timing=timing,
            log_buffer=self.log_buffer, on_log=self.send_log_entry, on_stats=self.send_stats
        )
        self.websocket = None
        self._run_task: Optional[asyncio.Task] = None
        self._status_task: Optional[asyncio.Task] = None

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            'start': self._cmd_start,
            'stop': self._cmd_stop,
            'pause': self._cmd_pause,
            'resume': self._cmd_resume,
            'update_config': self._cmd_update_config,
            'get_config': self._cmd_get_config,
            'screenshot': self._cmd_screenshot,
            'tap': self._cmd_tap,
            'test_coords': self._cmd_test_coords,
            'get_stats': self._cmd_get_stats,
            'reset_stats': self._cmd_reset_stats,
        }

    @property
    def run_active(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    # ------------------------------------------------------------------
    # Outgoing events
    # ------------------------------------------------------------------

    async def send_message(self, msg_type: str, payload: Any) -> None:
        websocket = self.websocket
        if websocket is None:
            return
        try:
            await websocket.send(make_envelope(msg_type, payload))
        except websockets.ConnectionClosed:
            logger.debug(f"Dropped {msg_type} event, operator connection closed")

    async def send_log_entry(self, entry: LogEntry) -> None:
        await self.send_message('log', {'level': entry.level, 'message': entry.message, 'phase': entry.phase})

    async def send_log(self, level: str, message: str) -> None:
        await self.controller.log(level, message)

    async def send_stats(self, payload: Optional[Dict[str, Any]] = None) -> None:
        await self.send_message('stats', payload or self.stats.to_payload())

    async def send_status(self, status: Optional[str] = None, **extra: Any) -> None:
        await self.send_message('status', {'status': status or self.state.status, **extra})

    async def _periodic_status(self) -> None:
        while self.state.running:
            await self.send_status()
            await asyncio.sleep(self.status_interval)

    def _restart_status_task(self) -> None:
        self._cancel_status_task()
        self._status_task = asyncio.create_task(self._periodic_status())

    def _cancel_status_task(self) -> None:
        if self._status_task:
            self._status_task.cancel()
            self._status_task = None

    # ------------------------------------------------------------------
    # Incoming commands
    # ------------------------------------------------------------------

    async def handle_message(self, raw: Any) -> None:
        """Parse and dispatch one console message; bad messages are logged and ignored"""
        try:
            action, params = parse_command(raw)
        except ProtocolError as e:
            logger.warning(f"Ignoring malformed message: {e}")
            return
        await self.handle_command(action, params)

    async def handle_command(self, action: str, params: Dict[str, Any]) -> None:
        handler = self._handlers.get(action)
        if handler is None:
            logger.warning(f"Ignoring unknown command: {action}")
            return
        logger.info(f"Command received: {action}")
        try:
            await handler(params)
        except (ProtocolError, ConfigurationError) as e:
            logger.warning(f"Ignoring invalid {action} command: {e}")
        except Exception as e:
            logger.exception(f"Command {action} failed")
            await self.send_log('error', f"Command {action} failed: {e}")

    async def _ensure_connected(self) -> bool:
        if self.adb.connected:
            return True
        return await asyncio.to_thread(self.adb.connect)

    async def _cmd_start(self, params: Dict[str, Any]) -> None:
        if self.run_active:
            await self.send_log('warning', "Bot is already running")
            return

        if not self.adb.connected:
            if not await asyncio.to_thread(self.adb.connect):
                await self.send_log('error', "Failed to connect to the emulator via ADB")
                await self.send_status('idle')
                return
            width, height = self.adb.screen_size
            await self.send_log('success', f"Connected to {self.adb.device_id} ({width}x{height})")

        self.state.start()
        self._run_task = asyncio.create_task(self.controller.run())
        await self.send_status('running')
        self._restart_status_task()

    async def _cmd_stop(self, params: Dict[str, Any]) -> None:
        # Flags only: the loop may be inside a blocking device/OCR call
        self.state.request_stop()
        self._cancel_status_task()
        await self.send_status('idle')
        await self.send_log('info', "Bot stopped by operator")

    async def _cmd_pause(self, params: Dict[str, Any]) -> None:
        if not self.state.running:
            await self.send_status('idle')
            await self.send_log('info', "Bot is not running")
            return
        self.state.set_paused(True)
        await self.send_status('paused')
        await self.send_log('info', "Bot paused")

    async def _cmd_resume(self, params: Dict[str, Any]) -> None:
        self.state.set_paused(False)
        await self.send_status('running' if self.state.running else 'idle')
        await self.send_log('info', "Bot resumed")

    async def _cmd_update_config(self, params: Dict[str, Any]) -> None:
        if not params:
            logger.debug("Empty configuration update ignored")
            return
        applied, rejected = self.config.apply_external(params)
        if applied:
            await self.send_log('info', f"Configuration updated: {', '.join(sorted(applied))}")
        if rejected:
            details = ', '.join(f"{key} ({reason})" for key, reason in rejected.items())
            await self.send_log('warning', f"Configuration rejected: {details}")

    async def _cmd_get_config(self, params: Dict[str, Any]) -> None:
        await self.send_message('config', self.config.to_external())

    async def _cmd_screenshot(self, params: Dict[str, Any]) -> None:
        if not await self._ensure_connected():
            await self.send_log('error', "Screenshot failed: no device connected")
            return
        data = await asyncio.to_thread(self.adb.capture_screenshot)
        if data:
            await self.send_message('screenshot', {'image': base64.b64encode(data).decode('ascii')})
            await self.send_log('info', "Screenshot captured")
        else:
            await self.send_log('error', "Failed to capture screenshot")

    async def _cmd_tap(self, params: Dict[str, Any]) -> None:
        percent = _number(params, 'xPercent', 'yPercent', 'x_percent', 'y_percent')
        pixels = None if percent else _number(params, 'x', 'y')
        if percent is None and pixels is None:
            raise ProtocolError("tap needs x/y or xPercent/yPercent")
        if not await self._ensure_connected():
            await self.send_log('error', "Tap failed: no device connected")
            return
        if percent:
            await asyncio.to_thread(self.adb.tap_percent, *percent)
            await self.send_log('info', f"Tap (percent) at ({percent[0]:.3f}, {percent[1]:.3f})")
        else:
            x, y = int(round(pixels[0])), int(round(pixels[1]))
            await asyncio.to_thread(self.adb.tap, x, y)
            await self.send_log('info', f"Tap at ({x}, {y})")

    async def _cmd_test_coords(self, params: Dict[str, Any]) -> None:
        await self.send_log('info', "Testing coordinates...")
        if not await self._ensure_connected():
            await self.send_log('error', "Coordinate test failed: no device connected")
            return
        await self.send_log('info', "Tapping the attack button...")
        await asyncio.to_thread(self.adb.tap_percent, *TEST_COORDS_POINT)
        await asyncio.sleep(TEST_COORDS_WAIT)
        path = await asyncio.to_thread(self.adb.save_debug_screenshot, 'test_coords', self.screenshot_directory)
        if path:
            await self.send_log('info', f"Screenshot saved: {path}")
        else:
            await self.send_log('error', "Could not save the test screenshot")

    async def _cmd_get_stats(self, params: Dict[str, Any]) -> None:
        await self.send_stats()

    async def _cmd_reset_stats(self, params: Dict[str, Any]) -> None:
        self.stats.reset()
        await self.send_stats()
        await self.send_log('info', "Statistics reset")

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def handler(self, websocket) -> None:
        """Serve one operator connection"""
        if self.websocket is not None:
            logger.warning("Refusing second operator connection")
            await websocket.close(code=OPERATOR_BUSY_CODE, reason="operator already connected")
            return

        self.websocket = websocket
        logger.info(f"Operator connected: {getattr(websocket, 'remote_address', None)}")

        adb_connected = await self._ensure_connected()
        size = self.adb.screen_size
        await self.send_status(
            'connected',
            adb_connected=adb_connected,
            screen_size=f"{size[0]}x{size[1]}" if adb_connected and size else None,
        )
        if adb_connected:
            await self.send_log('success', f"ADB connected: {self.adb.device_id} ({size[0]}x{size[1]})")
        else:
            await self.send_log('warning', "ADB not connected - check that the emulator is running")
        if self.run_active:
            await self.send_status()
            await self.send_stats()

        try:
            async for message in websocket:
                await self.handle_message(message)
        except websockets.ConnectionClosed:
            pass
        finally:
            if self.websocket is websocket:
                self.websocket = None
            logger.info("Operator disconnected")
            if self.run_active:
                logger.warning("Run loop continues without an operator")

    async def serve(self, stop: Optional[asyncio.Event] = None) -> None:
        """Listen until `stop` is set (forever if None), then shut the run loop down"""
        stop = stop or asyncio.Event()
        async with websockets.serve(self.handler, self.host, self.port):
            logger.info(f"Command gateway listening on ws://{self.host}:{self.port}")
            try:
                await stop.wait()
            finally:
                await self.shutdown()

    async def shutdown(self, timeout: float = 5.0) -> None:
        self.state.request_stop()
        self._cancel_status_task()
        if self.run_active:
            try:
                await asyncio.wait_for(self._run_task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Run loop did not stop in time, cancelling it")
