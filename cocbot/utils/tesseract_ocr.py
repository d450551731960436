"""
Tesseract OCR engine - thin wrapper around pytesseract with path auto-detection
and an availability probe that is distinct from "recognised nothing"
"""

import os
import platform
import shutil
import threading
from typing import Optional

import numpy as np
import pytesseract

from ..utils.logger import get_logger
from ..utils.exceptions import OCREngineUnavailableError

logger = get_logger(__name__)

DIGIT_WHITELIST = "0123456789"
RESOURCE_WHITELIST = "0123456789.,kKmM"
LOOT_WHITELIST = "0123456789.,"


def find_tesseract_cmd(explicit: Optional[str] = None) -> str:
    """
    Locate the tesseract executable

    Search order: explicit path, TESSERACT_CMD env var, common install
    locations for the platform, then plain 'tesseract' from PATH.
    """
    for candidate in (explicit, os.getenv('TESSERACT_CMD')):
        if candidate and os.path.isfile(candidate):
            return candidate

    system = platform.system()
    if system == 'Windows':
        common_paths = [
            r"C:\Program Files\Tesseract-OCR\tesseract.exe",
            r"C:\Program Files (x86)\Tesseract-OCR\tesseract.exe",
            r"C:\Users\{}\AppData\Local\Programs\Tesseract-OCR\tesseract.exe".format(os.getenv('USERNAME', '')),
        ]
    elif system == 'Darwin':
        common_paths = ['/opt/homebrew/bin/tesseract', '/usr/local/bin/tesseract']
    else:
        common_paths = ['/usr/bin/tesseract', '/usr/local/bin/tesseract']

    for path in common_paths:
        if os.path.isfile(path):
            return path

    return shutil.which('tesseract') or 'tesseract'


def build_config(psm: int, whitelist: Optional[str] = None) -> str:
    """Tesseract CLI config string for a page segmentation mode and optional allowlist"""
    config = f"--psm {psm}"
    if whitelist:
        config += f" -c tessedit_char_whitelist={whitelist}"
    return config


class TesseractEngine:
    """
    Tesseract-based OCR engine

    The availability probe runs once (tesseract --version through pytesseract)
    and is cached; call reset_probe() after changing the executable path.
    """

    def __init__(self, tesseract_cmd: Optional[str] = None, lang: str = 'eng'):
        """
        Args:
            tesseract_cmd: Path to tesseract executable (auto-detected if None)
            lang: Language code for OCR
        """
        self.lang = lang
        self.tesseract_cmd = find_tesseract_cmd(tesseract_cmd)
        pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd
        self._available: Optional[bool] = None
        self._version: Optional[str] = None
        self._lock = threading.Lock()
        logger.info(f"Using Tesseract at: {self.tesseract_cmd}")

    def is_available(self) -> bool:
        """Probe the engine once; later calls return the cached answer"""
        with self._lock:
            if self._available is None:
                try:
                    self._version = str(pytesseract.get_tesseract_version())
                    self._available = True
                    logger.info(f"Tesseract OCR available: {self._version}")
                except (pytesseract.TesseractNotFoundError, OSError) as e:
                    self._available = False
                    logger.error(f"Tesseract not available at {self.tesseract_cmd}: {e}")
            return self._available

    @property
    def version(self) -> Optional[str]:
        return self._version

    def reset_probe(self) -> None:
        with self._lock:
            self._available = None
            self._version = None

    def ensure_available(self) -> None:
        if not self.is_available():
            raise OCREngineUnavailableError(
                "tesseract is not installed or it's not in your PATH "
                "(set TESSERACT_CMD or ocr.tesseract_cmd in the config)"
            )

    def image_to_string(self, image: np.ndarray, psm: int = 6,
                        whitelist: Optional[str] = None) -> str:
        """
        Recognise text in a pre-processed bitmap

        Args:
            image: Binarised / grayscale image
            psm: Tesseract page segmentation mode
            whitelist: Allowed characters (None = unrestricted)

        Returns:
            Recognised text (possibly empty)

        Raises:
            OCREngineUnavailableError: Tesseract cannot be executed
        """
        self.ensure_available()
        try:
            return pytesseract.image_to_string(image, lang=self.lang, config=build_config(psm, whitelist))
        except pytesseract.TesseractNotFoundError as e:
            with self._lock:
                self._available = False
            raise OCREngineUnavailableError(str(e)) from e
        except pytesseract.TesseractError as e:
            logger.warning(f"Tesseract failed on image (psm {psm}): {e}")
            return ''


# Shared engine instance (one probe per process)
_shared_engine: Optional[TesseractEngine] = None


def get_tesseract_engine(tesseract_cmd: Optional[str] = None, lang: str = 'eng') -> TesseractEngine:
    """
    Get the shared Tesseract engine

    Args:
        tesseract_cmd: Path to tesseract executable (only used on first call)
        lang: Language code for OCR (only used on first call)
    """
    global _shared_engine
    if _shared_engine is None:
        _shared_engine = TesseractEngine(tesseract_cmd=tesseract_cmd, lang=lang)
    return _shared_engine
