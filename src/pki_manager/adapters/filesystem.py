"""
Filesystem adapters — CA material, published CRL and issued artifacts.

Adapter layer — implements CaStore, CrlPublisher and ArtifactStore on a
local directory tree:

  <storage>/ca/ca.key, ca.crt              CA identity (key mode 0600)
  <storage>/crl/crl.pem                     latest CRL, atomically replaced
  <storage>/servers/<id>/server.key|crt     server artifacts
  <storage>/users/<id>/<id>.key|crt|p12     client artifacts

Every write goes to a temporary file in the target directory, is fsynced
and then renamed over the destination, so a crash never leaves a torn file.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

import structlog
from railway import ErrorCode
from railway.result import Result

from pki_manager.domain.models import CaMaterial, CrlArtifact, Role

log = structlog.get_logger()

_PRIVATE_SUFFIXES = (".key", ".p12")


def write_atomic(path: Path, data: bytes, mode: int = 0o644) -> Path:
    """Durably replace `path` with `data` (temp file + fsync + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            os.fchmod(handle.fileno(), mode)
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return path


class FileCaStore:
    """
    Persist the CA key and certificate as PEM files.

    Implements the CaStore port. The key file is written first with mode
    0600; the certificate is written last, so its presence marks a complete
    identity.
    """

    KEY_FILE = "ca.key"
    CERT_FILE = "ca.crt"

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def key_path(self) -> Path:
        return self._directory / self.KEY_FILE

    @property
    def certificate_path(self) -> Path:
        return self._directory / self.CERT_FILE

    def exists(self) -> Result[bool]:
        return Result.from_computation(
            lambda: self.key_path.exists() or self.certificate_path.exists(),
            ErrorCode.STORAGE_ERROR,
            f"Cannot inspect CA directory {self._directory}",
        )

    def save(self, material: CaMaterial) -> Result[str]:
        if self.key_path.exists():
            return Result.failure(
                ErrorCode.ALREADY_INITIALIZED,
                f"CA key already exists at {self.key_path}",
            )
        return Result.from_computation(
            lambda: self._write(material),
            ErrorCode.STORAGE_ERROR,
            f"Failed to write CA material to {self._directory}",
        )

    def load(self) -> Result[CaMaterial]:
        if not (self.key_path.is_file() and self.certificate_path.is_file()):
            return Result.failure(
                ErrorCode.CA_NOT_INITIALIZED,
                "PKI not initialized: run 'pki-manager init' first",
            )
        self._warn_if_key_readable()
        return Result.from_computation(
            lambda: CaMaterial(
                key_pem=self.key_path.read_bytes(),
                certificate_pem=self.certificate_path.read_bytes(),
            ),
            ErrorCode.STORAGE_ERROR,
            f"Failed to read CA material from {self._directory}",
        )

    def _write(self, material: CaMaterial) -> str:
        write_atomic(self.key_path, material.key_pem, mode=0o600)
        write_atomic(self.certificate_path, material.certificate_pem)
        log.info("ca_store.saved", directory=str(self._directory))
        return str(self._directory)

    def _warn_if_key_readable(self) -> None:
        mode = self.key_path.stat().st_mode & 0o777
        if mode & 0o077:
            log.warning(
                "ca_store.key_permissions_too_open",
                path=str(self.key_path),
                mode=oct(mode),
                recommended="0o600",
            )


class FileCrlPublisher:
    """Write the latest CRL snapshot to a single PEM file. Implements CrlPublisher."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    def publish(self, artifact: CrlArtifact) -> Result[str]:
        return Result.from_computation(
            lambda: str(write_atomic(self._path, artifact.pem)),
            ErrorCode.STORAGE_ERROR,
            f"Failed to publish CRL to {self._path}",
        ).peek(
            lambda location: log.info(
                "crl.published",
                path=location,
                crl_number=artifact.crl_number,
                revoked=len(artifact.entries),
            )
        )


class FileArtifactStore:
    """
    Lay out issued keys and certificates per role and identifier.

    Implements the ArtifactStore port. Private material (.key, .p12) is
    written with mode 0600.
    """

    _ROLE_DIRECTORIES = {Role.SERVER: "servers", Role.CLIENT: "users"}

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    def directory_for(self, role: Role, identifier: str) -> Path:
        return self._root / self._ROLE_DIRECTORIES[role] / identifier

    def store(
        self,
        role: Role,
        identifier: str,
        files: Mapping[str, bytes],
    ) -> Result[str]:
        if identifier in ("", ".", "..") or os.sep in identifier:
            return Result.failure(
                ErrorCode.VALIDATION_ERROR,
                f"Identifier {identifier!r} cannot be used as a directory name",
            )
        return Result.from_computation(
            lambda: self._write_all(self.directory_for(role, identifier), files),
            ErrorCode.STORAGE_ERROR,
            f"Failed to store artifacts for {identifier!r}",
        )

    def _write_all(self, directory: Path, files: Mapping[str, bytes]) -> str:
        for name, data in files.items():
            mode = 0o600 if name.endswith(_PRIVATE_SUFFIXES) else 0o644
            write_atomic(directory / name, data, mode=mode)
        log.info("artifacts.stored", directory=str(directory), files=sorted(files))
        return str(directory)
