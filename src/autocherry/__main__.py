from __future__ import annotations

from autocherry.cli import main


if __name__ == "__main__":
    main()
