"""Configuration infrastructure module."""

from fsmengine.infrastructure.config.file_loader import MachineFileLoader
from fsmengine.infrastructure.config.settings import EngineSettings

__all__ = [
    "EngineSettings",
    "MachineFileLoader",
]
