from __future__ import annotations

"""
Entry script for PyInstaller builds.

PyInstaller expects a top-level script without package-relative imports.
This launcher delegates to the package entry point in gemini_gui.main.
"""

from gemini_gui.main import main


if __name__ == "__main__":
    main()
