# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import logging.handlers
import re
from pathlib import Path


def init_logging(host: str, verbose: bool = False):
    logging.getLogger().setLevel(logging.DEBUG)
    safe_host = re.sub(r'[^0-9A-Za-z._-]', '_', host)
    _init_file_logging(safe_host + '.log')
    _init_stream_logging(logging.DEBUG if verbose else logging.INFO)
    # Paramiko is verbose on DEBUG; keep it in the file only.
    logging.getLogger('paramiko').setLevel(logging.INFO)


def _init_file_logging(log_file_name: str):
    log_dir = Path('~/.cache/user_bootstrap_logs').expanduser()
    log_dir.mkdir(exist_ok=True, parents=True)
    file_handler = logging.handlers.RotatingFileHandler(
        log_dir / log_file_name, maxBytes=20 * 1024**2, backupCount=6)
    file_handler.setFormatter(logging.Formatter('%(asctime)s %(name)s %(levelname)s %(message)s'))
    file_handler.setLevel(logging.DEBUG)
    logging.getLogger().addHandler(file_handler)


def _init_stream_logging(level):
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter('%(levelname)s %(message)s'))
    stream_handler.setLevel(level)
    logging.getLogger().addHandler(stream_handler)
