"""Best-effort CMS signing of configuration profiles with openssl.

Signing is advisory: every failure (missing or unreadable material, openssl
not installed, non-zero exit, timeout) degrades to returning the unsigned
document so a working profile can always be downloaded.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from betblocker.config import Config

logger = logging.getLogger("betblocker.signing")

_PEM_MARKER = b"-----BEGIN "


@dataclass(frozen=True)
class SigningResult:
    content: bytes
    signed: bool

    @classmethod
    def unsigned(cls, content: bytes) -> "SigningResult":
        return cls(content=content, signed=False)


def read_pem(path: Path, label: str) -> bytes | None:
    """Read a PEM file, returning None (and logging) if unusable."""
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        logger.warning("Cannot read signing %s %s: %s", label, path, e)
        return None
    if _PEM_MARKER not in data:
        logger.warning("Signing %s %s is not PEM encoded", label, path)
        return None
    return data


class ProfileSigner:
    def __init__(self, config: Config) -> None:
        self.config = config

    def _material_paths(self) -> tuple[Path, Path, Path | None] | None:
        cfg = self.config
        if not cfg.signing_configured:
            return None
        cert = Path(cfg.signing_cert).expanduser()
        key = Path(cfg.signing_key).expanduser()
        chain = Path(cfg.signing_chain).expanduser() if cfg.signing_chain else None

        if read_pem(cert, "certificate") is None or read_pem(key, "key") is None:
            return None
        if chain is not None and read_pem(chain, "chain") is None:
            return None
        return cert, key, chain

    def _command(self, cert: Path, key: Path, chain: Path | None) -> list[str]:
        cmd = [
            self.config.openssl_bin, "smime", "-sign",
            "-binary",
            "-nodetach",
            "-outform", "der",
            "-signer", str(cert),
            "-inkey", str(key),
        ]
        if chain is not None:
            cmd += ["-certfile", str(chain)]
        return cmd

    def sign(self, document: bytes) -> SigningResult:
        """Sign document, falling back to the unsigned bytes on any failure."""
        material = self._material_paths()
        if material is None:
            if self.config.signing_configured:
                logger.warning("Signing material unusable, serving unsigned profile")
            return SigningResult.unsigned(document)

        # run() feeds stdin while draining stdout/stderr together, so a large
        # document cannot deadlock on full pipe buffers.
        try:
            result = subprocess.run(
                self._command(*material),
                input=document,
                capture_output=True,
                timeout=self.config.signing_timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(
                "openssl timed out after %.0fs, serving unsigned profile",
                self.config.signing_timeout,
            )
            return SigningResult.unsigned(document)
        except OSError as e:
            logger.warning("Could not launch %s: %s", self.config.openssl_bin, e)
            return SigningResult.unsigned(document)

        if result.returncode != 0 or not result.stdout:
            logger.warning(
                "openssl exited with %d, serving unsigned profile: %s",
                result.returncode,
                result.stderr.decode(errors="replace").strip(),
            )
            return SigningResult.unsigned(document)

        return SigningResult(content=result.stdout, signed=True)
