from typing import Iterator, Sequence, TypeVar

T = TypeVar('T')


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive slices of at most `size` items, preserving order"""
    if size <= 0:
        raise ValueError("Chunk size must be positive")
    for i in range(0, len(items), size):
        yield list(items[i:i + size])
