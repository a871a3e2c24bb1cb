from __future__ import annotations

from pathlib import Path


class PathSafetyError(ValueError):
    pass


def validate_artifact_key(raw_key: str) -> Path:
    if not raw_key.strip():
        raise PathSafetyError("Artifact key must not be blank")
    if raw_key.startswith("/"):
        raise PathSafetyError("Artifact key must be relative to the artifacts root")
    if ".." in Path(raw_key).parts:
        raise PathSafetyError("Path traversal is not allowed")
    if "~" in raw_key:
        raise PathSafetyError("Home expansion is not allowed")
    if "$" in raw_key:
        raise PathSafetyError("Environment variable expansion is not allowed")
    return Path(raw_key)


def resolve_under_root(root: Path, raw_key: str) -> Path:
    rel = validate_artifact_key(raw_key)
    resolved_root = root.resolve(strict=False)
    candidate = (resolved_root / rel).resolve(strict=False)

    if resolved_root in candidate.parents:
        return candidate

    raise PathSafetyError("Artifact key escapes artifacts root")
