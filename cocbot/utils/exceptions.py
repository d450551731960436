"""
Custom exceptions for the COC farm bot
"""

class BotError(Exception):
    """Base exception for all bot-related errors"""
    pass

class ImageRecognitionError(BotError):
    """Exception raised for OCR / image processing errors"""
    pass

class OCREngineUnavailableError(ImageRecognitionError):
    """Raised when Tesseract is not installed or cannot be reached.

    Distinct from a recognition that simply found no digits: callers must
    not treat this as a zero reading.
    """
    pass

class ConfigurationError(BotError):
    """Exception raised for configuration errors"""
    pass

class ProtocolError(BotError):
    """Exception raised for malformed operator messages"""
    pass
