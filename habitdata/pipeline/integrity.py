from __future__ import annotations

import hashlib
from dataclasses import dataclass

from habitdata.core.config import SUPPORTED_CHECKSUM_ALGORITHMS
from habitdata.jobs.types import ArtifactInfo, VerificationInfo


@dataclass(frozen=True)
class ChecksumComparison:
    checksum_match: bool
    size_match: bool
    actual_checksum: str
    actual_size: int

    @property
    def ok(self) -> bool:
        return self.checksum_match and self.size_match


class IntegrityVerifier:
    def __init__(self, algorithm: str = "sha256"):
        normalized = algorithm.lower().strip()
        if normalized not in SUPPORTED_CHECKSUM_ALGORITHMS:
            raise ValueError(f"Unsupported checksum algorithm: {algorithm}")
        self.algorithm = normalized

    def compute_checksum(self, data: bytes, *, algorithm: str | None = None) -> str:
        hasher = hashlib.new(algorithm or self.algorithm)
        hasher.update(data)
        return hasher.hexdigest()

    def compare(self, *, expected_checksum: str, expected_size: int, data: bytes, algorithm: str | None = None) -> ChecksumComparison:
        actual_checksum = self.compute_checksum(data, algorithm=algorithm)
        return ChecksumComparison(
            checksum_match=actual_checksum == expected_checksum,
            size_match=len(data) == expected_size,
            actual_checksum=actual_checksum,
            actual_size=len(data),
        )

    def describe(self, data: bytes, *, location: str, version: int, content_type: str, file_extension: str) -> ArtifactInfo:
        return ArtifactInfo(
            location=location,
            size_bytes=len(data),
            checksum=self.compute_checksum(data),
            checksum_algorithm=self.algorithm,
            version=version,
            content_type=content_type,
            file_extension=file_extension,
        )

    def verify_artifact(self, artifact: ArtifactInfo, stored: bytes, *, method: str) -> VerificationInfo:
        """Re-hash ``stored`` with the artifact's own algorithm and compare."""
        comparison = self.compare(
            expected_checksum=artifact.checksum,
            expected_size=artifact.size_bytes,
            data=stored,
            algorithm=artifact.checksum_algorithm,
        )
        notes: list[str] = []
        if not comparison.checksum_match:
            notes.append(f"{artifact.checksum_algorithm} mismatch: stored bytes hash to {comparison.actual_checksum}")
        if not comparison.size_match:
            notes.append(f"size mismatch: expected {artifact.size_bytes} bytes, found {comparison.actual_size}")
        return VerificationInfo(
            verified=comparison.ok,
            method=method,
            checksum_match=comparison.checksum_match,
            size_match=comparison.size_match,
            expected_checksum=artifact.checksum,
            actual_checksum=comparison.actual_checksum,
            expected_size=artifact.size_bytes,
            actual_size=comparison.actual_size,
            notes=notes,
        )
