# Database Infrastructure - command persistence
from .connection import Base, DatabaseManager
from .models import DeviceCommandModel
from .repositories import CommandRepository

__all__ = [
    "Base",
    "DatabaseManager",
    "DeviceCommandModel",
    "CommandRepository",
]
