"""
Engram — persistent memory for agent workflows.

Captures tool use, phase changes and messages from a host, distills them
into durable records, and serves them back as prompt-ready context.
"""

from .config import Config
from .events import EventBus, MEMORY_EVENT, MEMORY_SAVED, MEMORY_UPDATED, CONFIG_CHANGED

__version__ = "0.1.0"
