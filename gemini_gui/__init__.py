"""
Gemini GUI application package.

This package contains the Qt user interface, the local chat-history store,
and the Gemini API adapter that make up the desktop chat client.
"""

from .config import AppConfig

__version__ = "0.3.0"
