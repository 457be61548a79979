import numpy as np


def compute_chunk_boundaries(
    total_samples: int,
    last_chunk_end: int,
    samples_per_chunk: int,
) -> list[tuple[int, int]]:
    """Return (start, end) sample offsets for every complete chunk since *last_chunk_end*.

    Pure function. The emission loop calls this on every
    poll; if fewer than *samples_per_chunk* new samples have accumulated,
    returns [].
    """
    boundaries: list[tuple[int, int]] = []
    pos = last_chunk_end
    while pos + samples_per_chunk <= total_samples:
        boundaries.append((pos, pos + samples_per_chunk))
        pos += samples_per_chunk
    return boundaries


def take_chunks(
    frames: list[np.ndarray], samples_per_chunk: int
) -> tuple[list[np.ndarray], list[np.ndarray]]:
    """Cut every complete chunk off the front of *frames*.

    Returns ``(chunks, remainder)`` where each chunk is a flat float32 array of
    exactly *samples_per_chunk* samples and *remainder* holds the leftover
    audio (as a single-element list, or empty).
    """
    if not frames:
        return [], []
    audio = np.concatenate([frame.reshape(-1) for frame in frames])
    boundaries = compute_chunk_boundaries(len(audio), 0, samples_per_chunk)
    chunks = [audio[start:end] for start, end in boundaries]
    consumed = boundaries[-1][1] if boundaries else 0
    remainder = [audio[consumed:]] if consumed < len(audio) else []
    return chunks, remainder
