from __future__ import annotations

from pathlib import Path

from setuptools import find_packages, setup

VERSION = "0.1.0"
init_file = Path(__file__).parent / "src" / "cc_overlay" / "__init__.py"
for line in init_file.read_text(encoding="utf-8").splitlines():
    if line.startswith("__version__"):
        VERSION = line.split("=", 1)[1].strip().strip("\"'")
        break

setup(
    name="cc-overlay",
    version=VERSION,
    description="Usage tracking and session correlation for Claude Code, Codex and Gemini CLI subscriptions",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9",
        "psutil>=5.9",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "cc-overlay=cc_overlay.app:main",
        ],
    },
)
