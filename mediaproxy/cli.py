import argparse
import logging

LOG = logging.getLogger(__name__)


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Range-aware media proxy and download cache")
    ap.add_argument("--host", default=None)
    ap.add_argument("--port", type=int, default=None)
    ap.add_argument("--data-dir", default=None)
    ap.add_argument("--inactivity-minutes", type=float, default=None)
    ap.add_argument("--log-level", default=None)
    return ap.parse_args(argv)


def main(argv=None) -> int:
    from mediaproxy.config import ConfigManager
    from mediaproxy.factory import build_app

    args = parse_args(argv)
    config = ConfigManager()
    config.update(
        host=args.host,
        port=args.port,
        data_dir=args.data_dir,
        inactivity_minutes=args.inactivity_minutes,
        log_level=args.log_level,
    )

    level = getattr(logging, str(config.get("log_level", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, format='%(asctime)s [%(name)s] %(levelname)s %(message)s')

    try:
        app = build_app(config)
    except OSError as e:
        LOG.error("Cannot create data directory %s: %s", config.data_dir, e)
        return 1

    app.sweeper.start()
    try:
        app.server.serve_forever()
    except KeyboardInterrupt:
        LOG.info("Shutting down")
    finally:
        app.stop()
    return 0

