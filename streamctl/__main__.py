#!/usr/bin/env python3
"""
Run the streamctl dashboard under uvicorn.
"""

import argparse
import logging
from pathlib import Path

import uvicorn

from .config import DATA_DIR, setup_logging

logger = logging.getLogger("streamctl")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Web dashboard supervising continuously-running ffmpeg restream jobs."
    )
    parser.add_argument("--host", default="0.0.0.0", help="Address to bind")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on")
    parser.add_argument("--data-dir", default=str(DATA_DIR),
        help="Directory holding streams.json, settings.json, logs/ and scripts/")
    parser.add_argument("--log-level", default="info", help="Log level")

    args = parser.parse_args()

    setup_logging(args.log_level)

    from .main import create_app

    data_dir = Path(args.data_dir).resolve()
    logger.info(f"Serving on {args.host}:{args.port} | data_dir={data_dir}")
    uvicorn.run(create_app(data_dir), host=args.host, port=args.port,
                log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
