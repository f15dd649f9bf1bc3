# FILE: proofledger/__main__.py
# Usage: python -m proofledger --port 8010
from __future__ import annotations

import argparse

import uvicorn

from .config import get_settings
from .logging import configure_json_logging


def main(argv=None) -> None:
    p = argparse.ArgumentParser(prog="proofledger")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8010)
    args = p.parse_args(argv)

    settings = get_settings().get()
    configure_json_logging(settings.log_level)
    uvicorn.run(
        "proofledger.service_http:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
