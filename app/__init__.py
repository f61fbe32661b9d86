# app/__init__.py
"""AiAm Backend Application"""

__version__ = "1.0.0"
