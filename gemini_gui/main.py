from __future__ import annotations

import logging
import sys

from PySide6.QtGui import QIcon
from PySide6.QtWidgets import QApplication

from . import __version__
from .config import AppConfig, configure_logging
from .resources import icon_path
from .ui import MainWindow
from .ui.workers import wait_for_detached_threads

logger = logging.getLogger(__name__)


def main() -> None:
    # Qt アプリのエントリポイント。設定→メインウィンドウを生成して実行する。
    configure_logging()
    app = QApplication(sys.argv)
    app.setApplicationName("Gemini GUI")
    app.setApplicationVersion(__version__)
    icon = icon_path()
    if icon is not None:
        app.setWindowIcon(QIcon(str(icon)))
    config = AppConfig()
    logger.info("Starting Gemini GUI %s (data directory: %s)", __version__, config.paths.root)
    window = MainWindow(config)
    window.show()
    exit_code = app.exec()
    wait_for_detached_threads()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
