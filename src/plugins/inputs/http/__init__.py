"""
HTTP Input Plugin.

REST API for applying, reading and deleting stored objects.
"""

from plugins.inputs.http.api import HTTPInputPlugin

__all__ = ["HTTPInputPlugin"]
