from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from pi_release_upgrade.backup import RepoConfigStore
from pi_release_upgrade.config import Settings
from pi_release_upgrade.errors import PermissionDeniedError, ResolutionError
from pi_release_upgrade.preflight import GIB, PowerState, SystemPreflight
from pi_release_upgrade.versioning import Catalog

ROOT_SOURCES = (
    "deb http://raspbian.raspberrypi.org/raspbian/ bookworm main contrib non-free rpi\n"
    "# Uncomment line below then 'apt-get update' to enable 'apt-get source'\n"
    "#deb-src http://raspbian.raspberrypi.org/raspbian/ bookworm main contrib non-free rpi\n"
)
RASPI_LIST = "deb http://archive.raspberrypi.org/debian/ bookworm main\n"


class FakeRunner:
    """Stands in for ``run_cmd``; answers by the last argument of the command."""

    def __init__(
        self,
        responses: Optional[Dict[str, Tuple[int, List[str]]]] = None,
        default: Tuple[int, List[str]] = (0, []),
    ) -> None:
        self.responses = responses or {}
        self.default = default
        self.calls: List[List[str]] = []
        self.envs: List[Optional[dict]] = []

    def __call__(self, cmd, env=None, timeout=None, on_line=None, log_output=True):
        cmd = list(cmd)
        self.calls.append(cmd)
        self.envs.append(env)
        rc, lines = self.responses.get(cmd[-1], self.default)
        for line in lines:
            if on_line:
                on_line(line)
        return rc, list(lines)

    def ran(self, last_arg: str) -> bool:
        return any(call[-1] == last_arg for call in self.calls)


class StaticCatalog:
    """Catalog client returning a fixed catalog, or raising a fixed error."""

    def __init__(self, *codenames: str, error: Optional[ResolutionError] = None) -> None:
        self.catalog = Catalog.from_iterable(codenames, source="static")
        self.error = error
        self.fetches = 0

    def fetch(self) -> Catalog:
        self.fetches += 1
        if self.error is not None:
            raise self.error
        return self.catalog


@pytest.fixture
def apt_dir(tmp_path: Path) -> Path:
    apt = tmp_path / "etc" / "apt"
    (apt / "sources.list.d").mkdir(parents=True)
    (apt / "sources.list").write_text(ROOT_SOURCES)
    (apt / "sources.list.d" / "raspi.list").write_text(RASPI_LIST)
    return apt


@pytest.fixture
def settings(tmp_path: Path, apt_dir: Path) -> Settings:
    return Settings(
        apt_dir=apt_dir,
        backup_root=tmp_path / "backups",
        log_path=tmp_path / "log" / "upgrade.log",
        capture_dir=tmp_path / "capture",
        lock_path=tmp_path / "run" / "upgrade.lock",
        os_release_path=tmp_path / "os-release",
        debian_version_path=tmp_path / "debian_version",
    )


@pytest.fixture
def store(settings: Settings) -> RepoConfigStore:
    return RepoConfigStore(settings.sources_list, settings.sources_list_d, settings.backup_root)


def snapshot_tree(apt: Path) -> Dict[str, bytes]:
    return {
        str(path.relative_to(apt)): path.read_bytes()
        for path in sorted(apt.rglob("*"))
        if path.is_file()
    }


class ScriptedPreflight(SystemPreflight):
    """Preflight whose system checks are replaced by fixed answers."""

    def __init__(self, settings, runner, *, free=100 * GIB, power=PowerState(), third_party=(), root=True):
        super().__init__(settings, runner=runner)
        self.free = free
        self.power = power
        self.third_party = list(third_party)
        self.root = root

    def check_permissions(self) -> None:
        if not self.root:
            raise PermissionDeniedError("This tool must be run as root.")

    def check_dependencies(self) -> None:
        pass

    def check_connectivity(self) -> None:
        pass

    def available_space(self, path="/") -> int:
        return self.free

    def check_power_state(self) -> PowerState:
        return self.power

    def detect_third_party_repos(self):
        return self.third_party
