from __future__ import annotations

from event_monitor.entrypoints.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
