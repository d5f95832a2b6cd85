"""Constants, runtime settings and logging setup.

Every path and endpoint used by the tool is declared here once.  The
:class:`Settings` dataclass bundles them so the rest of the package never
reads module globals directly, which keeps the tests free to point the tool
at a temporary ``/etc/apt`` tree.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

APP_NAME = "Raspberry Pi OS Release Upgrade"
APP_ID = "org.raspberrypi.ReleaseUpgrade"

APT_DIR = Path("/etc/apt")
BACKUP_ROOT = Path("/var/backups")
BACKUP_PREFIX = "apt-sources-"
LOG_PATH_ROOT = Path("/var/log/rpios-upgrade-tool.log")
LOG_PATH_FALLBACK = Path("/tmp/rpios-upgrade-tool.log")
CAPTURE_DIR = Path("/tmp")
CAPTURE_PREFIX = "rpios-apt-output-"
LOCK_PATH_ROOT = Path("/run/rpios-upgrade-tool.lock")
LOCK_PATH_FALLBACK = Path("/tmp/rpios-upgrade-tool.lock")
OS_RELEASE_PATH = Path("/etc/os-release")
DEBIAN_VERSION_PATH = Path("/etc/debian_version")

DEBIAN_RELEASES_FEED = "https://endoflife.date/api/debian.json"
VENDOR_DISTS_LISTING = "https://archive.raspberrypi.org/debian/dists/"
CONNECT_TIMEOUT = 10.0
TOTAL_TIMEOUT = 30.0

CONNECTIVITY_HOST = "deb.debian.org"
CONNECTIVITY_PORT = 80

# Hosts whose repositories count as part of the distribution.
OFFICIAL_REPO_HOSTS = (
    "deb.debian.org",
    "security.debian.org",
    "raspbian.raspberrypi.org",
    "archive.raspberrypi.org",
    "archive.raspberrypi.com",
)

LOW_BATTERY_PERCENT = 50

ENV_PREFIX = "PI_RELEASE_UPGRADE_"

TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M%S"


def get_log_path() -> Path:
    return LOG_PATH_ROOT if os.geteuid() == 0 else LOG_PATH_FALLBACK


def get_lock_path() -> Path:
    return LOCK_PATH_ROOT if os.geteuid() == 0 else LOCK_PATH_FALLBACK


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for one invocation of the tool."""

    apt_dir: Path = APT_DIR
    backup_root: Path = BACKUP_ROOT
    log_path: Path = field(default_factory=get_log_path)
    capture_dir: Path = CAPTURE_DIR
    lock_path: Path = field(default_factory=get_lock_path)
    os_release_path: Path = OS_RELEASE_PATH
    debian_version_path: Path = DEBIAN_VERSION_PATH
    debian_feed_url: str = DEBIAN_RELEASES_FEED
    vendor_listing_url: str = VENDOR_DISTS_LISTING
    connect_timeout: float = CONNECT_TIMEOUT
    total_timeout: float = TOTAL_TIMEOUT

    @property
    def sources_list(self) -> Path:
        return self.apt_dir / "sources.list"

    @property
    def sources_list_d(self) -> Path:
        return self.apt_dir / "sources.list.d"

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings, letting ``PI_RELEASE_UPGRADE_*`` variables override paths.

        Only a handful of values are overridable; they exist for packaging and
        for exercising the tool against a scratch directory.
        """

        env = os.environ if environ is None else environ
        overrides: dict[str, object] = {}
        for name in ("apt_dir", "backup_root", "log_path", "capture_dir", "lock_path"):
            value = env.get(ENV_PREFIX + name.upper())
            if value:
                overrides[name] = Path(value)
        feed = env.get(ENV_PREFIX + "DEBIAN_FEED")
        if feed:
            overrides["debian_feed_url"] = feed
        listing = env.get(ENV_PREFIX + "VENDOR_LISTING")
        if listing:
            overrides["vendor_listing_url"] = listing
        return cls(**overrides)  # type: ignore[arg-type]


def configure_logging(log_path: Path, *, verbose: bool = False) -> Path:
    """Send log records to *log_path*, falling back to ``/tmp`` when needed.

    Returns the path actually in use.
    """

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(str(log_path), mode="a")
    except OSError:
        log_path = LOG_PATH_FALLBACK
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(str(log_path), mode="a")
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[handler],
    )
    return log_path


__all__ = [
    "APP_ID",
    "APP_NAME",
    "BACKUP_PREFIX",
    "CAPTURE_PREFIX",
    "OFFICIAL_REPO_HOSTS",
    "Settings",
    "TIMESTAMP_FORMAT",
    "configure_logging",
    "get_lock_path",
    "get_log_path",
]
