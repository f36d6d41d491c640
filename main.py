"""
入口转发

定位核心已封装为可复用的包与 CLI：
  - 包名: beacon_locator
  - CLI: beacon-locator

此文件仅用于兼容 `python main.py` 的运行方式，会转发到 `beacon_locator.cli:main`。
"""

import sys

from beacon_locator.cli import main as _cli_main


def main():
    return _cli_main()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
