from mempool.decoders.base import Decoder
from mempool.decoders.dex import ADD_LIQUIDITY, SWAP, DexDecoder
from mempool.decoders.utils import input_selector, normalize_address, selector

__all__ = [
    "ADD_LIQUIDITY",
    "Decoder",
    "DexDecoder",
    "SWAP",
    "input_selector",
    "normalize_address",
    "selector",
]
