"""
COC farm bot - ADB + Tesseract automation of farming attacks, commanded over a WebSocket
"""

__version__ = "1.0.0"
