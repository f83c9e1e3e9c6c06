"""
Checksum-gated retrieval of step artifacts.

Every artifact is downloaded into a staging directory and hashed against
``checksums.txt`` (``sha256sum`` format). Nothing reaches the install
directory unless every artifact matched. A detached GPG signature over the
checksum file is checked when present, but only advisorily.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import requests

from hostguard.utils.command import CommandRunner

logger = logging.getLogger(__name__)

CHECKSUMS_NAME = "checksums.txt"
SIGNATURE_NAME = "checksums.txt.asc"


class IntegrityError(Exception):
    """Raised when an artifact does not match its expected hash."""


class ArtifactFetchError(IntegrityError):
    """Raised when an artifact (or the checksum list) cannot be retrieved."""


def parse_checksums(text: str) -> Dict[str, str]:
    """
    Parse ``sha256sum`` output into {path: hexdigest}.

    Accepts text (``hash  path``) and binary (``hash *path``) markers and
    ignores blank lines and comments.
    """
    expected: Dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(None, 1)
        if len(parts) != 2 or len(parts[0]) != 64:
            raise IntegrityError(f"{CHECKSUMS_NAME} line {lineno} is malformed: {line!r}")
        digest, path = parts
        path = path.lstrip("*")
        if path.startswith("./"):
            path = path[2:]
        expected[path] = digest.lower()
    return expected


def sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


@dataclass
class FetchResult:
    dest_dir: str
    verified: List[str] = field(default_factory=list)
    signature: str = "absent"  # absent, unavailable, verified, invalid


class ArtifactFetcher:
    """Fetches artifacts from an HTTP(S) base URL or a local directory."""

    def __init__(
        self,
        source: str,
        dest_dir: str,
        artifacts: Sequence[str],
        *,
        session: Optional[requests.Session] = None,
        runner: Optional[CommandRunner] = None,
        timeout: float = 30,
    ):
        self.source = source.rstrip("/")
        self.dest_dir = Path(dest_dir)
        self.artifacts = list(artifacts)
        self.session = session or requests.Session()
        self.runner = runner or CommandRunner()
        self.timeout = timeout

    @property
    def remote(self) -> bool:
        return self.source.startswith(("http://", "https://"))

    def _fetch(self, name: str, staging: Path) -> Path:
        target = staging / name
        target.parent.mkdir(parents=True, exist_ok=True)

        if self.remote:
            url = f"{self.source}/{name}"
            logger.info("Downloading %s", url)
            try:
                with self.session.get(url, timeout=self.timeout, stream=True) as resp:
                    resp.raise_for_status()
                    with open(target, "wb") as f:
                        for chunk in resp.iter_content(chunk_size=65536):
                            f.write(chunk)
            except requests.RequestException as e:
                raise ArtifactFetchError(f"Failed to download {url}: {e}")
        else:
            source = Path(self.source) / name
            try:
                shutil.copyfile(source, target)
            except OSError as e:
                raise ArtifactFetchError(f"Failed to copy {source}: {e}")

        return target

    def _check_signature(self, staging: Path) -> str:
        try:
            signature = self._fetch(SIGNATURE_NAME, staging)
        except ArtifactFetchError:
            logger.info("No GPG signature for %s (skipping signature check)", CHECKSUMS_NAME)
            return "absent"

        if not self.runner.which("gpg"):
            logger.warning("GPG signature present but gpg is not installed; not checked")
            return "unavailable"

        result = self.runner.run(["gpg", "--verify", str(signature), str(staging / CHECKSUMS_NAME)])
        if result.ok:
            logger.info("GPG signature verified")
            return "verified"

        logger.warning("GPG signature verification failed (advisory only): %s", result.describe())
        return "invalid"

    def fetch_and_verify(self) -> FetchResult:
        """
        Fetch every artifact and install them only if all hashes match.

        Raises:
            ArtifactFetchError: If the checksum list or an artifact is unavailable
            IntegrityError: If an artifact is unlisted or its hash differs
        """
        self.dest_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".fetch-", dir=str(self.dest_dir)))
        result = FetchResult(dest_dir=str(self.dest_dir))

        try:
            checksums = self._fetch(CHECKSUMS_NAME, staging)
            expected = parse_checksums(checksums.read_text(encoding="utf-8"))

            for name in self.artifacts:
                if name not in expected:
                    raise IntegrityError(f"{name} is not listed in {CHECKSUMS_NAME}")
                path = self._fetch(name, staging)
                actual = sha256_file(str(path))
                if actual != expected[name]:
                    raise IntegrityError(
                        f"Checksum mismatch for {name}: expected {expected[name]}, got {actual}"
                    )
                logger.info("Checksum OK: %s", name)
                result.verified.append(name)

            result.signature = self._check_signature(staging)

            for name in self.artifacts + [CHECKSUMS_NAME]:
                target = self.dest_dir / name
                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(staging / name, target)
                if name.endswith(".sh"):
                    os.chmod(target, 0o755)
            if result.signature != "absent":
                os.replace(staging / SIGNATURE_NAME, self.dest_dir / SIGNATURE_NAME)

        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("All %d artifacts verified and installed to %s", len(result.verified), self.dest_dir)
        return result
