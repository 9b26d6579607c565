"""Entry point for rtl-slurp."""

import logging
import queue
import signal
import sys
import threading

from rtl_slurp.config import load_config
from rtl_slurp.dumper import Dumper
from rtl_slurp.errors import ConfigError, MetadataStoreError, SinkError
from rtl_slurp.filer import Filer
from rtl_slurp.logs import setup_logging
from rtl_slurp.sink import build_sink

logger = logging.getLogger(__name__)

# Grace period for the dumper's final flush after the filer has stopped.
DUMPER_STOP_TIMEOUT = 15.0


def main(argv: list[str] | None = None) -> int:
    try:
        config = load_config(argv)
    except ConfigError as e:
        print(f"rtl-slurp: {e}", file=sys.stderr)
        return 2

    setup_logging(config.log_level, config.log_file)
    logger.info("Monitoring %s, metadata in %s, InfluxDB at %s/%s",
                config.data_location, config.metadata_dir,
                config.influxdb.url, config.influxdb.database)

    shutdown_event = threading.Event()

    def signal_handler(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    readings: queue.Queue = queue.Queue(maxsize=config.queue_size)
    sink = build_sink(config.influxdb)
    dumper = Dumper(config.influxdb, readings, sink, field_sets=config.meta)
    filer = Filer(config, readings)

    try:
        dumper.start()
    except SinkError as e:
        logger.error("Failed to start dumper: %s", e)
        sink.close()
        return 1

    try:
        filer.start()
    except MetadataStoreError as e:
        logger.error("Failed to start filer: %s", e)
        dumper.stop(DUMPER_STOP_TIMEOUT)
        sink.close()
        return 1

    logger.info("rtl-slurp running. Press Ctrl+C to stop.")
    shutdown_event.wait()

    filer.stop()
    dumper.stop(DUMPER_STOP_TIMEOUT)
    sink.close()
    logger.info("Stats: %d points written in %d flushes, %d failed attempts",
                dumper.points_flushed, dumper.flushes, dumper.failed_attempts)
    return 0


if __name__ == "__main__":
    sys.exit(main())
