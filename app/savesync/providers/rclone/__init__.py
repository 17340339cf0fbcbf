from .executor import CommandOutcome, CommandResult, RcloneBackend, TransferBackend
from .transfer import TransferResult, TransferService

__all__ = [
    "CommandOutcome",
    "CommandResult",
    "RcloneBackend",
    "TransferBackend",
    "TransferResult",
    "TransferService",
]
