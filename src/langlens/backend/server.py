import argparse
import asyncio
import logging
from typing import Optional, Sequence

import uvicorn

from langlens.config import coerce_config, load_config
from langlens.service.client import check_api_health
from langlens.backend.app import create_app

#########################################################################
## Backend server #######################################################
#########################################################################

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve langlens thread sessions over HTTP.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--api-url", help="LangGraph API server (default: $LANGGRAPH_API_URL)")
    parser.add_argument("--preferences-db", help="SQLite file for UI preferences")
    parser.add_argument("--log-level", default="info")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entry point of the langlens-server command."""
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config()
    overrides = config.model_dump(mode="json")
    if args.api_url:
        overrides["api_url"] = args.api_url
    if args.preferences_db:
        overrides["preferences_db"] = args.preferences_db
    config = coerce_config(overrides)

    if not asyncio.run(check_api_health(config.api_url)):
        logging.getLogger(__name__).warning(
            "LangGraph API at %s is not reachable; threads will load once it is up", config.api_url,
        )

    app = create_app(config)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
