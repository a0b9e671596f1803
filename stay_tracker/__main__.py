"""Module entry point: python -m stay_tracker ..."""

from __future__ import annotations

from stay_tracker.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
