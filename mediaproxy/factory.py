import logging
import os
from dataclasses import dataclass

from mediaproxy.cache_store import CacheStore
from mediaproxy.config import ConfigManager
from mediaproxy.fetcher import Fetcher
from mediaproxy.rate_limit import ClientRateLimiter
from mediaproxy.server import MediaProxyServer
from mediaproxy.stream_server import StreamServer
from mediaproxy.sweeper import EvictionSweeper

LOG = logging.getLogger(__name__)

RECORD_FILE_NAME = "videos.json"


@dataclass
class MediaProxyApp:
    store: CacheStore
    fetcher: Fetcher
    streamer: StreamServer
    sweeper: EvictionSweeper
    server: MediaProxyServer

    def start(self) -> None:
        self.sweeper.start()
        self.server.start()

    def stop(self) -> None:
        self.server.stop()
        self.sweeper.stop()


def build_app(config: ConfigManager) -> MediaProxyApp:
    """Wire the store, fetcher, streamer, sweeper and HTTP server.

    Raises OSError if the data directory cannot be created.
    """
    data_dir = config.data_dir
    os.makedirs(data_dir, exist_ok=True)

    store = CacheStore(os.path.join(data_dir, RECORD_FILE_NAME))
    count = store.load()
    LOG.info("Loaded %d cache entries from %s", count, store.record_path)

    fetcher = Fetcher(
        store,
        data_dir,
        timeout=config.fetch_timeout,
        chunk_bytes=int(config.get("fetch_chunk_kb", 512)) * 1024,
    )
    streamer = StreamServer(
        store,
        session=fetcher.session,
        timeout=config.fetch_timeout,
        chunk_bytes=int(config.get("stream_chunk_kb", 64)) * 1024,
    )
    sweeper = EvictionSweeper(
        store,
        inactivity_seconds=config.inactivity_seconds,
        interval_seconds=float(config.get("cleanup_interval_seconds", 300)),
    )
    limiter = ClientRateLimiter(
        max_requests=int(config.get("rate_limit_max_requests", 300)),
        window_seconds=float(config.get("rate_limit_window_seconds", 60)),
    )
    server = MediaProxyServer(
        store,
        fetcher,
        streamer,
        limiter=limiter,
        host=str(config.get("host", "0.0.0.0")),
        port=int(config.get("port", 4000)),
    )
    return MediaProxyApp(store=store, fetcher=fetcher, streamer=streamer, sweeper=sweeper, server=server)
