"""Module entrypoint for running the burn watcher with shared settings."""

from deepburn_watcher.services.watcher.main import main

if __name__ == "__main__":
    raise SystemExit(main())
