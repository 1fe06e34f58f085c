"""
Logging utilities for HiCNB.
Console (INFO) and log.txt (DEBUG) output shared by the main process and the
per-chromosome worker pool through a QueueListener.
"""

import logging
import multiprocessing
import sys
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(output_dir: Path, verbose: bool = False):
    """
    Setup logging to stdout and to log.txt in the output directory.

    :param output_dir: Directory to save log.txt.
    :param verbose: Also show DEBUG messages on the console.
    :return: Tuple of (queue for pool workers, running QueueListener).
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    log_file = output_dir / "log.txt"

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(formatter)

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    queue = multiprocessing.Manager().Queue(-1)
    listener = QueueListener(queue, console_handler, file_handler, respect_handler_level=True)
    listener.start()

    _route_root_to_queue(queue)

    logging.getLogger(__name__).info(f"Logging initialized. Log file: {log_file}")
    return queue, listener


def worker_configurer(queue):
    """
    Configure a pool worker to log to the central queue.
    Forked workers inherit the parent's handlers, which are replaced here.
    """
    _route_root_to_queue(queue)


def _route_root_to_queue(queue):
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in root.handlers[:]:
        root.removeHandler(h)
    root.addHandler(QueueHandler(queue))
