"""
Input plugins package.

Input plugins let requesters submit and delete objects (HTTP API, etc.).
They write to the object store only; the controller reacts to watch events.
"""

from plugins.inputs.base import InputPlugin

__all__ = ["InputPlugin"]
