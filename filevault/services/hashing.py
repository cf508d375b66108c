"""Content identity: streaming SHA-256 digests for dedup and integrity."""

import hashlib
from pathlib import Path
from typing import BinaryIO, Union

ALGORITHM = "sha256"
CHUNK_SIZE = 64 * 1024


def hash_stream(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> str:
    digest = hashlib.sha256()
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        digest.update(chunk)
    return digest.hexdigest()


def hash_file(path: Union[str, Path], chunk_size: int = CHUNK_SIZE) -> str:
    with open(path, "rb") as f:
        return hash_stream(f, chunk_size)
