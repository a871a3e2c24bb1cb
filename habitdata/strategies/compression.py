from __future__ import annotations

import gzip


class GzipCompressor:
    extension = "gz"

    def __init__(self, level: int = 6):
        self._level = level

    def compress(self, data: bytes) -> bytes:
        # Fixed mtime keeps the output, and so the checksum, reproducible.
        return gzip.compress(data, compresslevel=self._level, mtime=0)

    def decompress(self, data: bytes) -> bytes:
        return gzip.decompress(data)
