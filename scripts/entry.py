"""PyInstaller entry point (the package itself uses relative imports)."""

from clawlink.__main__ import main

if __name__ == "__main__":
    main()
