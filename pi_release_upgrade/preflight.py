"""Checks run before anything on the system is changed.

Every check is a method on :class:`SystemPreflight` and most of them are thin
wrappers around a pure parser (``parse_*``) so the parsing can be tested
without a Raspberry Pi.  :func:`run_preflight` turns the findings into either
a :class:`~pi_release_upgrade.errors.PreconditionError` or questions for the
operator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
import re
import shutil
import socket
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .apt_sources import find_third_party_files
from .config import (
    CONNECTIVITY_HOST,
    CONNECTIVITY_PORT,
    LOW_BATTERY_PERCENT,
    OFFICIAL_REPO_HOSTS,
    Settings,
)
from .errors import PermissionDeniedError, PreconditionError
from .markers import APT_ENV
from .pipeline import APT_GET, Runner, apt_command, run_cmd
from .presentation import Presentation

logger = logging.getLogger(__name__)

KB = 1000
MB = 1000 * KB
GB = 1000 * MB
GIB = 1024 ** 3
MIB = 1024 ** 2

# Used when apt's own estimate cannot be read.
FALLBACK_REQUIRED_BYTES = 3 * GIB
FREED_REQUIRED_BYTES = 500 * MIB
SPACE_MARGIN_BYTES = 1 * GIB

REQUIRED_TOOLS = ("apt-get", "dpkg")
AC_ONLINE_PATH = Path("/sys/class/power_supply/AC/online")

_UNITS = {"B": 1, "kB": KB, "MB": MB, "GB": GB}
_USED_RE = re.compile(
    r"After this operation, ([0-9][0-9.,]*) (B|kB|MB|GB) of additional disk space will be used"
)
_FREED_RE = re.compile(r"After this operation, ([0-9][0-9.,]*) (B|kB|MB|GB) disk space will be freed")


@dataclass(frozen=True)
class AptHealth:
    broken_deps: bool = False
    held_packages: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PowerState:
    """``on_battery`` is ``None`` when the power supply cannot be determined."""

    on_battery: Optional[bool] = None
    percentage: Optional[int] = None
    charging: bool = False

    @property
    def low_battery(self) -> bool:
        return (
            bool(self.on_battery)
            and not self.charging
            and self.percentage is not None
            and self.percentage < LOW_BATTERY_PERCENT
        )


def _amount(number: str, unit: str) -> int:
    return int(float(number.replace(",", "")) * _UNITS[unit])


def parse_space_estimate(text: str) -> int:
    """Bytes needed for an upgrade, from ``apt-get --simulate`` output.

    apt reports sizes in SI units.  A safety margin is always added; when
    apt's summary line is missing a fixed fallback is used instead.
    """

    match = _USED_RE.search(text)
    if match:
        required = _amount(match.group(1), match.group(2))
    elif _FREED_RE.search(text):
        required = FREED_REQUIRED_BYTES
    else:
        logger.warning("Could not parse the space estimate from apt; assuming %d bytes", FALLBACK_REQUIRED_BYTES)
        required = FALLBACK_REQUIRED_BYTES
    return required + SPACE_MARGIN_BYTES


def parse_held_packages(selections: str) -> Tuple[str, ...]:
    """Package names marked ``hold`` in ``dpkg --get-selections`` output."""

    held = []
    for line in selections.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1] == "hold":
            held.append(parts[0])
    return tuple(held)


def parse_upower_battery(text: str) -> PowerState:
    """Read ``state`` and ``percentage`` from ``upower -i <battery>`` output."""

    state = ""
    percentage: Optional[int] = None
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key == "state":
            state = value
        elif key == "percentage":
            try:
                percentage = int(float(value.rstrip("%").replace(",", ".")))
            except ValueError:
                percentage = None
    charging = state in ("charging", "fully-charged", "pending-charge")
    return PowerState(on_battery=not charging if state else None, percentage=percentage, charging=charging)


def parse_ac_online(text: str) -> Optional[bool]:
    value = text.strip()
    if value == "1":
        return True
    if value == "0":
        return False
    return None


def internet_available(host: str = CONNECTIVITY_HOST, port: int = CONNECTIVITY_PORT, timeout: float = 5) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class SystemPreflight:
    def __init__(
        self,
        settings: Settings,
        *,
        runner: Runner = run_cmd,
        ac_online_path: Path = AC_ONLINE_PATH,
        official_hosts: Sequence[str] = OFFICIAL_REPO_HOSTS,
    ) -> None:
        self.settings = settings
        self.runner = runner
        self.ac_online_path = ac_online_path
        self.official_hosts = tuple(official_hosts)

    def _run(self, *argv: str) -> Tuple[int, List[str]]:
        return self.runner(list(argv), env=APT_ENV, log_output=False)

    def check_permissions(self) -> None:
        if os.geteuid() != 0:
            raise PermissionDeniedError("This tool must be run as root.")

    def check_dependencies(self) -> None:
        missing = [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]
        if missing:
            raise PreconditionError(f"Required tools not found: {', '.join(missing)}")

    def check_connectivity(self) -> None:
        if not internet_available():
            raise PreconditionError(
                f"No internet connectivity to {CONNECTIVITY_HOST}.",
                recovery="Nothing was changed. Connect the device to the network and try again.",
            )

    def estimate_required_space(self) -> int:
        _rc, lines = self._run(APT_GET, "--simulate", "dist-upgrade")
        return parse_space_estimate("\n".join(lines))

    def available_space(self, path: str = "/") -> int:
        return shutil.disk_usage(path).free

    def check_package_manager_health(self) -> AptHealth:
        rc, lines = self._run(APT_GET, "check")
        text = "\n".join(lines)
        broken = "The following packages have unmet dependencies" in text
        if rc != 0:
            logger.warning("'apt-get check' exited with %s", rc)
        _rc, selections = self._run("dpkg", "--get-selections")
        return AptHealth(broken_deps=broken, held_packages=parse_held_packages("\n".join(selections)))

    def check_power_state(self) -> PowerState:
        if shutil.which("upower"):
            rc, devices = self._run("upower", "-e")
            batteries = [d.strip() for d in devices if "battery" in d]
            if rc == 0 and batteries:
                _rc, info = self._run("upower", "-i", batteries[0])
                state = parse_upower_battery("\n".join(info))
                logger.info("Battery: on_battery=%s percentage=%s", state.on_battery, state.percentage)
                return state
        try:
            online = parse_ac_online(self.ac_online_path.read_text())
        except OSError:
            logger.info("No battery or AC indicator found; skipping the power check")
            return PowerState()
        if online is None:
            return PowerState()
        return PowerState(on_battery=not online)

    def detect_third_party_repos(self) -> List[Path]:
        return find_third_party_files(self.settings.sources_list_d, self.official_hosts)

    def repair_broken_dependencies(self) -> bool:
        rc, _lines = self.runner(apt_command("-f", "install"), env=APT_ENV)
        return rc == 0

    def release_held_packages(self, packages: Sequence[str]) -> List[str]:
        """Unhold *packages*; returns those that could not be released."""

        failed = []
        for package in packages:
            rc, _lines = self.runner(["apt-mark", "unhold", package], env=APT_ENV)
            if rc != 0:
                logger.error("Could not release held package %s", package)
                failed.append(package)
        return failed


@dataclass
class PreflightReport:
    required_bytes: int = 0
    available_bytes: int = 0
    health: AptHealth = field(default_factory=AptHealth)
    power: PowerState = field(default_factory=PowerState)
    third_party: List[Path] = field(default_factory=list)


def _gib(value: int) -> str:
    return f"{value / GIB:.1f} GiB"


def run_preflight(
    preflight: SystemPreflight, presentation: Presentation, *, major: bool = True
) -> Optional[PreflightReport]:
    """Run every check before touching the packages.

    Returns the findings, or ``None`` when the operator chose to stop.  The
    third-party repository question is only asked for a *major* upgrade; a
    refresh within the current release leaves those repositories alone.

    Raises
    ------
    PreconditionError
        When a check fails in a way the operator cannot override.
    """

    report = PreflightReport()
    preflight.check_permissions()
    preflight.check_dependencies()
    preflight.check_connectivity()

    report.required_bytes = preflight.estimate_required_space()
    report.available_bytes = preflight.available_space()
    logger.info(
        "Estimated space required: %s, available: %s",
        _gib(report.required_bytes),
        _gib(report.available_bytes),
    )
    if report.available_bytes < report.required_bytes:
        raise PreconditionError(
            f"Not enough free space on /: {_gib(report.required_bytes)} needed, "
            f"{_gib(report.available_bytes)} available.",
            recovery="Nothing was changed. Free some space (e.g. 'sudo apt-get clean') and try again.",
        )

    report.health = preflight.check_package_manager_health()
    if report.health.broken_deps:
        presentation.warning(
            "Broken dependencies",
            "The package manager reports unmet dependencies. Trying 'apt-get -f install'.",
        )
        if not preflight.repair_broken_dependencies():
            raise PreconditionError(
                "Repairing broken dependencies with 'apt-get -f install' failed.",
                recovery="Nothing was changed. Repair the packages manually and run the tool again.",
            )

    held = report.health.held_packages
    if held and presentation.confirm(
        "Held packages",
        "These packages are on hold and will not be upgraded:\n  "
        + "\n  ".join(held)
        + "\nRelease them now?",
    ):
        failed = preflight.release_held_packages(held)
        if failed:
            presentation.warning(
                "Held packages",
                "Could not release: " + ", ".join(failed)
                + "\nRelease them manually with 'sudo apt-mark unhold <package>'.",
            )

    report.power = preflight.check_power_state()
    if report.power.low_battery:
        if not presentation.confirm(
            "Low battery",
            f"The battery is at {report.power.percentage}% and not charging. "
            "A power loss during the upgrade can leave the system unbootable. Continue anyway?",
        ):
            logger.info("Upgrade cancelled because of low battery")
            return None
    elif report.power.on_battery and report.power.percentage is None:
        if not presentation.confirm(
            "No mains power",
            "The device does not seem to be connected to mains power. "
            "A power loss during the upgrade can leave the system unbootable. Continue anyway?",
        ):
            logger.info("Upgrade cancelled because no mains power was detected")
            return None

    if not major:
        return report

    third_party = preflight.detect_third_party_repos()
    if third_party and presentation.confirm(
        "Third-party repositories",
        "These repositories are not part of Debian or Raspberry Pi OS and may break the upgrade:\n  "
        + "\n  ".join(str(p) for p in third_party)
        + "\nDisable them (after the backup is taken)?",
    ):
        report.third_party = third_party
    return report


__all__ = [
    "AptHealth",
    "PowerState",
    "PreflightReport",
    "SystemPreflight",
    "internet_available",
    "parse_ac_online",
    "parse_held_packages",
    "parse_space_estimate",
    "parse_upower_battery",
    "run_preflight",
]
