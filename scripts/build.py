#!/usr/bin/env python3
"""Build a standalone clawlink binary for distribution.

Usage:
    python scripts/build.py

Creates:
    dist/clawlink (or clawlink.exe on Windows)
"""

import os
import platform
import subprocess
import sys
from pathlib import Path


def main():
    root = Path(__file__).parent.parent
    os.chdir(root)

    system = platform.system().lower()
    name = "clawlink.exe" if system == "windows" else "clawlink"

    print(f"Building clawlink for {system}...")

    cmd = [
        sys.executable, "-m", "PyInstaller",
        "--onefile",
        "--name", "clawlink",
        "--clean",
        "--collect-submodules", "clawlink",
        "--hidden-import", "textual",
        "--hidden-import", "textual.widgets",
        "--hidden-import", "rich",
        "--hidden-import", "httpx",
        "--hidden-import", "websockets",
        "--hidden-import", "cryptography.hazmat.primitives.asymmetric.ed25519",
        "scripts/entry.py",
    ]

    result = subprocess.run(cmd, cwd=root)

    if result.returncode == 0:
        dist_path = root / "dist" / name
        print("\nBuild successful!")
        print(f"   Binary: {dist_path}")
        print(f"   Size: {dist_path.stat().st_size / 1024 / 1024:.1f} MB")
    else:
        print("\nBuild failed!")
        sys.exit(1)


if __name__ == "__main__":
    main()
