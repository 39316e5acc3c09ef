from .helius import HeliusHistoryClient
from .birdeye import BirdeyeTokenClient
from .solana_rpc import SolanaRpcClient
from .transaction_stream import TransactionStream

__all__ = [
    'HeliusHistoryClient',
    'BirdeyeTokenClient',
    'SolanaRpcClient',
    'TransactionStream'
]
