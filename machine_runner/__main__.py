"""Allow ``python -m machine_runner``."""

from machine_runner.cli import main

raise SystemExit(main())
