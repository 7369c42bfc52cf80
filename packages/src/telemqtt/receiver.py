"""``telemqtt-receiver`` entry point.

Subscribes to every sensor topic below the configured prefix and
prints each delivered message until SIGINT/SIGTERM.
"""

from __future__ import annotations

from telemqtt import __version__
from telemqtt._app import ReceiverApp

app = ReceiverApp(version=__version__)


def main() -> None:
    app.cli()


if __name__ == "__main__":
    main()
