from .base import IngestionBase, metadata
from .transfer import TokenTransfer
from .pipeline_state import PipelineState, PIPELINE_STATE_ID

__all__ = [
    'IngestionBase',
    'metadata',
    'TokenTransfer',
    'PipelineState',
    'PIPELINE_STATE_ID'
]
