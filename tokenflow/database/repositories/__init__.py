from .transfer import TransferRepository
from .checkpoint import CheckpointRepository

__all__ = [
    'TransferRepository',
    'CheckpointRepository'
]
