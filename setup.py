from __future__ import annotations

from pathlib import Path

from setuptools import find_packages, setup

ROOT = Path(__file__).parent.resolve()
PACKAGE_NAME = "pi_release_upgrade"
PACKAGE_DIR = ROOT / PACKAGE_NAME

PACKAGE_FILES = [
    str(path.relative_to(ROOT))
    for path in PACKAGE_DIR.rglob("*")
    if path.is_file() and path.suffix == ".py"
]

setup(
    name="pi-release-upgrade",
    version="0.1.0",
    description="Package refresh and major release upgrades for Raspberry Pi OS, with a GTK4 or terminal front-end.",
    long_description=(ROOT / "README.md").read_text(encoding="utf-8"),
    long_description_content_type="text/markdown",
    license="GPL-2.0-only",
    python_requires=">=3.10",
    packages=find_packages(where=".", exclude=["tests", "tests.*"]),
    include_package_data=True,
    zip_safe=False,
    install_requires=["click>=8.0"],
    extras_require={
        "gui": ["PyGObject>=3.42"],
        "test": ["pytest>=7"],
    },
    scripts=["pi-release-upgrade.py"],
    entry_points={
        "console_scripts": ["pi-release-upgrade=pi_release_upgrade.cli:main"],
    },
    data_files=[
        (f"lib/pi-release-upgrade/{PACKAGE_NAME}", PACKAGE_FILES),
    ],
)
