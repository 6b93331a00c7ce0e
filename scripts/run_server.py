"""
Run the session handler HTTP server.

Loads the YAML configuration, applies logging settings and serves the
FastAPI application with uvicorn.
"""

import sys
import argparse
from pathlib import Path

import uvicorn

# Add the src to the path to import modules
sys.path.append(str(Path(__file__).parent.parent / "src"))

from session_handler.server import create_app
from session_handler.utils.config import load_config, AppConfig
from session_handler.utils.logging import configure_root_logging, setup_logger


def main():
    """
    Parse arguments, configure logging and start serving.
    """
    parser = argparse.ArgumentParser(description="Point-cloud session handler server")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file (defaults to config/default.yaml)",
    )
    parser.add_argument("--host", type=str, default=None, help="Override server.host")
    parser.add_argument("--port", type=int, default=None, help="Override server.port")
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Override dispatcher.n_workers (background worker threads)",
    )
    parser.add_argument(
        "--serial-path",
        action="append",
        default=None,
        help="Directory for serialized pipelines; may be given more than once",
    )
    args = parser.parse_args()

    cfg: AppConfig = load_config(args.config)
    if args.host:
        cfg.server.host = args.host
    if args.port:
        cfg.server.port = args.port
    if args.workers is not None:
        cfg.dispatcher.n_workers = args.workers
    if args.serial_path:
        cfg.server.serial_paths = args.serial_path

    configure_root_logging(cfg.logging.level, cfg.logging.file)
    logger = setup_logger(__name__, level=cfg.logging.level)
    logger.info(f"HTTP server starting on {cfg.server.host}:{cfg.server.port}")

    uvicorn.run(create_app(cfg), host=cfg.server.host, port=cfg.server.port, log_level=cfg.logging.level.lower())


if __name__ == "__main__":
    main()
