"""
Main entry point for the COC farm bot
Starts the command gateway that the operator console connects to
"""

import sys
import asyncio
import argparse

from cocbot import __version__
from cocbot.core.adb_manager import ADBManager
from cocbot.core.run_config import LiveRunConfig, build_run_config
from cocbot.modules.command_gateway import CommandGateway
from cocbot.modules.statistics import SessionStatistics
from cocbot.modules.vision_reader import VisionReader
from cocbot.utils.config import ConfigManager, get_config_manager
from cocbot.utils.exceptions import BotError
from cocbot.utils.logger import get_logger, set_log_level
from cocbot.utils.tesseract_ocr import get_tesseract_engine

logger = get_logger(__name__)


def build_gateway(config_manager: ConfigManager, host: str = None, port: int = None,
                  device: str = None) -> CommandGateway:
    """Wire the device driver, OCR, run configuration and gateway from settings"""
    settings = config_manager.get_config()
    if device:
        settings.adb.preferred_device = device

    adb = ADBManager.from_settings(settings.adb)
    engine = get_tesseract_engine(settings.ocr.tesseract_cmd, settings.ocr.language)
    vision = VisionReader(engine, debug_directory=settings.ocr.debug_directory)
    live_config = LiveRunConfig(build_run_config(config_manager.get_run_defaults()))

    return CommandGateway(
        adb, vision, live_config, SessionStatistics(),
        host=host or settings.gateway.host,
        port=port or settings.gateway.port,
        status_interval=settings.gateway.status_interval_s,
        log_window=settings.gateway.log_window,
        screenshot_directory=settings.screenshot_directory,
    )


def run_checks(gateway: CommandGateway) -> bool:
    """Connect to the device and probe Tesseract, printing the results"""
    ok = True
    print("1. Connecting to the emulator...")
    if gateway.adb.connect():
        width, height = gateway.adb.screen_size
        print(f"   ✅ {gateway.adb.device_id} ({width}x{height})")
    else:
        print("   ❌ No device (is the emulator running with ADB enabled?)")
        ok = False

    print("2. Probing Tesseract...")
    engine = gateway.vision.engine
    if engine.is_available():
        print(f"   ✅ Tesseract {engine.version} at {engine.tesseract_cmd}")
    else:
        print("   ❌ Tesseract not available (set TESSERACT_CMD)")
        ok = False
    return ok


def main():
    """Main function"""
    parser = argparse.ArgumentParser(description="COC farm bot - ADB controller and command gateway")
    parser.add_argument('--config', '-c', help='Configuration file path')
    parser.add_argument('--host', help='Gateway listen address (default from config)')
    parser.add_argument('--port', '-p', type=int, help='Gateway port (default from config)')
    parser.add_argument('--device', '-d', help='Device ID to prefer')
    parser.add_argument('--check', action='store_true', help='Check ADB and Tesseract, then exit')
    parser.add_argument('--version', action='version', version=f'COC farm bot v{__version__}')

    args = parser.parse_args()

    try:
        config_manager = get_config_manager(args.config)
        set_log_level(config_manager.get_logging_settings().level)
        gateway = build_gateway(config_manager, args.host, args.port, args.device)

        if args.check:
            return 0 if run_checks(gateway) else 1

        print("=" * 50)
        print("  COC Farm Bot - ADB Controller")
        print("=" * 50)
        print(f"\nListening on ws://{gateway.host}:{gateway.port}")
        print("Press Ctrl+C to stop the bot\n")

        asyncio.run(gateway.serve())

    except KeyboardInterrupt:
        print("\n👋 Bot stopped by user")
    except BotError as e:
        print(f"❌ Bot error: {e}")
        return 1
    except OSError as e:
        print(f"❌ Could not start the gateway: {e}")
        logger.exception("Gateway startup failed")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
