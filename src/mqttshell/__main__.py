"""Run an Agent or a Controller: ``python -m mqttshell {agent,controller} ...``."""

from __future__ import annotations

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
