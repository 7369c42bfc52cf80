"""``telemqtt-sender`` entry point.

Publishes the simulated speed (every second) and temperature (every
five seconds) readings until SIGINT/SIGTERM.
"""

from __future__ import annotations

from telemqtt import __version__
from telemqtt._app import SenderApp

app = SenderApp(version=__version__)


def main() -> None:
    app.cli()


if __name__ == "__main__":
    main()
