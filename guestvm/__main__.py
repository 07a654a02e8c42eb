"""Allow ``python -m guestvm``."""

from __future__ import annotations

from guestvm.cli import run


def main() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    main()
