#!/usr/bin/env python3
"""
Setup Script - Initialize runtime directories, configuration and a sample .env
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from cocbot.utils.config import get_config_manager
from cocbot.utils.exceptions import ConfigurationError
from cocbot.utils.logger import get_logger

ENV_SAMPLE = """# COC farm bot environment configuration
# Copy this file to .env and modify as needed

# ADB
# COCBOT_ADB_PATH=C:/platform-tools/adb.exe
# COCBOT_DEVICE=127.0.0.1:5555

# Tesseract
# TESSERACT_CMD=C:/Program Files/Tesseract-OCR/tesseract.exe

# Operator channel
COCBOT_WS_HOST=localhost
COCBOT_WS_PORT=8765

# Logging
COCBOT_LOG_LEVEL=INFO
"""


def setup_project() -> bool:
    """Setup the project structure and configuration"""
    print("🔧 Setting up COC farm bot")
    print("=" * 50)

    project_root = Path(__file__).parent.parent

    try:
        print("📁 Creating directories...")
        for directory in ('screenshots', 'logs', 'debug_victory', 'config'):
            (project_root / directory).mkdir(parents=True, exist_ok=True)
            print(f"   ✅ {directory}")

        print("\n⚙️ Initializing configuration...")
        config_manager = get_config_manager(str(project_root / 'config' / 'bot_config.yaml'))
        print(f"   ✅ Configuration at: {config_manager.config_file}")

        logger = get_logger("setup")
        logger.info("Project setup completed")

        env_sample = project_root / '.env.sample'
        if not env_sample.exists():
            env_sample.write_text(ENV_SAMPLE, encoding='utf-8')
            print("\n🔐 .env.sample created")

        print("\n🎉 Setup completed!")
        print("\n📋 Next steps:")
        print("   1. Review config/bot_config.yaml")
        print("   2. Copy .env.sample to .env and customize")
        print("   3. Run: python scripts/test_connection.py")
        print("   4. Run: python main.py")
        return True

    except (OSError, ConfigurationError) as e:
        print(f"\n❌ Setup failed: {e}")
        return False


if __name__ == "__main__":
    sys.exit(0 if setup_project() else 1)
