import time
import logging
import signal
import argparse

from core.app_context import AppContext
from core.config_loader import load_config
from notifier.dispatcher import DigestSweeper

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global flag for graceful shutdown
running = True


def signal_handler(sig, frame):
    global running
    logger.info("Shutdown signal received")
    running = False


def run_sweeper_only(sweeper: DigestSweeper) -> None:
    """Flush digests in the background until a shutdown signal arrives."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    sweeper.start()
    while running:
        time.sleep(1)


def main():
    parser = argparse.ArgumentParser(description="Notifier Main Driver")
    parser.add_argument('--mode', type=str, choices=['all', 'sweeper'], default='all',
                        help='all (default): admin API plus digest sweeper; sweeper: digest sweeper only')
    parser.add_argument('--config', type=str, default='config.yaml',
                        help='Path to the YAML configuration file')
    args = parser.parse_args()

    config = load_config(args.config)
    context = AppContext.build(config)
    sweeper = DigestSweeper(context.dispatcher, config.dedup.sweep_interval_seconds)

    logger.info(f"Notifier starting in {args.mode.upper()} mode...")
    if config.rate_limits.redis_url:
        logger.info("Rate limiting: shared Redis quota store")
    else:
        logger.info("Rate limiting: in-process quota store (single instance only)")

    try:
        if args.mode == 'all' and config.admin_api.enabled:
            from web.backend.app import run
            sweeper.start()
            # uvicorn installs its own signal handlers and returns on shutdown
            run(context)
        else:
            run_sweeper_only(sweeper)
    finally:
        logger.info("Shutting down notifier...")
        sweeper.stop()
        context.close()
        logger.info("Notifier stopped")


if __name__ == "__main__":
    main()
