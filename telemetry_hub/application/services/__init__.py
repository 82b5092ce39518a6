# Application Services
from .command_service import CommandService, CreateCommandRequest

__all__ = [
    "CommandService",
    "CreateCommandRequest",
]
