"""
Installer fetcher — download installer scripts with curl.

Content is captured in memory and handed back unverified; nothing here
writes to disk or executes what it downloaded. HTTPS is enforced for
the request and for every redirect.
"""

from __future__ import annotations

import logging
import shutil
import subprocess

from provisioner.adapters.base import FetchResult, InstallerFetcher

logger = logging.getLogger(__name__)


class CurlInstallerFetcher(InstallerFetcher):
    """Fetch with ``curl --proto =https -fsSL``."""

    def __init__(self, curl: str = "curl"):
        self._curl = curl

    def is_available(self) -> bool:
        return shutil.which(self._curl) is not None

    def fetch(self, url: str, *, timeout: int) -> FetchResult:
        if not url.startswith("https://"):
            return FetchResult(url=url, ok=False, error="refusing non-HTTPS installer URL")

        argv = [
            self._curl,
            "--proto", "=https",
            "--proto-redir", "=https",
            "-fsSL",
            "--max-time", str(timeout),
            url,
        ]
        logger.debug("Fetching installer %s", url)

        try:
            result = subprocess.run(argv, capture_output=True, timeout=timeout + 5)
        except subprocess.TimeoutExpired:
            return FetchResult(url=url, ok=False, error=f"Download timed out after {timeout}s")
        except OSError as e:
            return FetchResult(url=url, ok=False, error=f"Download error: {e}")

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            return FetchResult(
                url=url,
                ok=False,
                error=f"Download failed (exit {result.returncode}): {stderr[:200]}",
            )

        logger.debug("Fetched %d bytes from %s", len(result.stdout), url)
        return FetchResult(url=url, ok=True, content=result.stdout)
