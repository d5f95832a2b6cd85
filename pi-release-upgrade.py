#!/usr/bin/env python3
# /usr/bin/pi-release-upgrade.py
# Refresh packages or upgrade Raspberry Pi OS to the next major release
#  - Target release = newest Debian release also published by the Raspberry Pi archive
#  - Timestamped backup of /etc/apt sources before any change, restore on request
#  - GTK4 window when a display is available, terminal menu otherwise
#  - Log to /var/log/rpios-upgrade-tool.log (fallback /tmp)

import os
import sys
from pathlib import Path


def _add_project_root_to_sys_path() -> bool:
    """Ensure the bundled ``pi_release_upgrade`` package can be imported."""

    script_path = Path(__file__).resolve()
    search_roots = [script_path.parent]

    # Walk a couple of parent directories to cover layouts such as
    # ``/usr/lib/pi-release-upgrade`` with a symlink in ``/usr/bin``.
    for parent in list(script_path.parents)[:4]:
        search_roots.append(parent)

    search_roots.extend(
        Path(path)
        for path in os.environ.get("PI_RELEASE_UPGRADE_PATH", "").split(os.pathsep)
        if path
    )

    prefixes = {Path(sys.prefix), Path(sys.exec_prefix), Path("/usr"), Path("/usr/local")}
    for prefix in prefixes:
        for lib_dir in ("lib", "lib64", "share"):
            search_roots.append(prefix / lib_dir / "pi-release-upgrade")

    # sudo and pkexec sanitise the environment, which can leave PYTHONPATH
    # empty; include the standard site directories explicitly.
    import site
    import sysconfig

    search_roots.extend(Path(path) for path in sysconfig.get_paths().values())
    try:
        search_roots.extend(Path(path) for path in site.getsitepackages())
    except AttributeError:
        # ``site.getsitepackages`` is not available in virtual environments.
        pass

    seen: set[Path] = set()
    for root in search_roots:
        try:
            resolved = root.resolve()
        except FileNotFoundError:
            continue
        if resolved in seen:
            continue
        seen.add(resolved)

        if (resolved / "pi_release_upgrade" / "__init__.py").exists():
            root_str = str(resolved)
            if root_str not in sys.path:
                sys.path.insert(0, root_str)
            return True

    return False


try:
    from pi_release_upgrade.cli import main
except ModuleNotFoundError as exc:
    if exc.name not in {"pi_release_upgrade", "pi_release_upgrade.cli"}:
        raise
    if not _add_project_root_to_sys_path():
        raise ModuleNotFoundError(
            "pi_release_upgrade package could not be located. Set the"
            " PI_RELEASE_UPGRADE_PATH environment variable or install the"
            " project so that the package is available on PYTHONPATH."
        ) from exc
    from pi_release_upgrade.cli import main


if __name__ == "__main__":
    main()
