"""Chunk planning: map a file size onto the blob network's bucket sizes"""

from dataclasses import dataclass
from typing import Iterator, List, Sequence, Tuple

MIB = 1024 * 1024

# Supported blob payload tiers, ascending
DEFAULT_BUCKET_SIZES: Tuple[int, ...] = (1 * MIB, 2 * MIB, 4 * MIB, 8 * MIB, 16 * MIB)


@dataclass(frozen=True)
class ChunkPlan:
    """Result of planning a file: bucket size in bytes and number of chunks"""

    bucket_size: int
    chunk_count: int

    @property
    def is_chunked(self) -> bool:
        return self.chunk_count > 1


def parse_bucket_sizes_mib(value: str) -> List[int]:
    """Parse a comma-separated list of MiB sizes into ascending byte sizes"""
    sizes = [int(part.strip()) * MIB for part in value.split(",") if part.strip()]
    return sorted(sizes)


def ceil_div(numerator: int, denominator: int) -> int:
    """Integer division rounded up, exact for any size"""
    return -(-numerator // denominator)


def resolve_bucket_size(file_size: int, bucket_sizes: Sequence[int] = DEFAULT_BUCKET_SIZES) -> int:
    """
    Pick the smallest bucket that holds file_size, or the largest bucket.

    Args:
        file_size: Size in bytes (non-negative)
        bucket_sizes: Ascending bucket sizes in bytes

    Returns:
        Bucket size in bytes
    """
    if not bucket_sizes:
        raise ValueError("At least one bucket size is required")
    if file_size < 0:
        raise ValueError(f"File size must not be negative: {file_size}")

    for bucket in bucket_sizes:
        if file_size <= bucket:
            return bucket
    return bucket_sizes[-1]


def plan_chunks(file_size: int, bucket_sizes: Sequence[int] = DEFAULT_BUCKET_SIZES) -> ChunkPlan:
    """
    Plan how a file of file_size bytes is stored.

    A plan with a single chunk means the file is stored as one blob;
    chunking is only used when more than one chunk is needed.
    """
    bucket = resolve_bucket_size(file_size, bucket_sizes)
    chunk_count = max(1, ceil_div(file_size, bucket))
    return ChunkPlan(bucket_size=bucket, chunk_count=chunk_count)


def is_supported_bucket_size(size: int, bucket_sizes: Sequence[int] = DEFAULT_BUCKET_SIZES) -> bool:
    return size in bucket_sizes


def max_chunk_count(max_file_size: int, bucket_sizes: Sequence[int] = DEFAULT_BUCKET_SIZES) -> int:
    """Hard upper bound on chunks for any file within max_file_size"""
    return plan_chunks(max_file_size, bucket_sizes).chunk_count


def iter_chunk_slices(data: bytes, bucket_size: int) -> Iterator[Tuple[int, bytes]]:
    """Split data into (index, slice) pairs of at most bucket_size bytes"""
    if bucket_size <= 0:
        raise ValueError("bucket_size must be positive")
    view = memoryview(data)
    for index, offset in enumerate(range(0, max(len(data), 1), bucket_size)):
        yield index, bytes(view[offset:offset + bucket_size])
