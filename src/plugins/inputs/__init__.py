"""
Input plugins package.

Input plugins let users submit objects to the store (the HTTP API).
"""

from plugins.inputs.base import InputPlugin, ObjectCallback

__all__ = ["InputPlugin", "ObjectCallback"]
