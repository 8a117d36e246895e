# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import fnmatch
import logging
from configparser import ConfigParser
from pathlib import Path
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Sequence

_logger = logging.getLogger(__name__)


class BootstrapConfig(NamedTuple):
    port: int
    remote_user: str
    identity_file: Optional[Path]
    known_hosts: Path
    saved_host_keys: Path
    remote_python: str
    connect_timeout_sec: float
    run_timeout_sec: float
    key_sources: Sequence[str]


def _read_config(host: str, *paths: Path) -> Mapping[str, str]:
    """Read sections that apply to the target host.

    Section names are masks like "[rockpi-*]"; "[defaults]" applies to all.
    Within a file, later sections override earlier ones.
    Later files override earlier files.
    """
    config = {}
    for path in paths:
        config_parser = ConfigParser()
        config_parser.read(path)
        for section in config_parser.sections():
            mask = '*' if section == 'defaults' else section
            if fnmatch.fnmatch(host, mask):
                _logger.debug("Config %s: section %s: read", path, section)
                config.update(config_parser.items(section))
            else:
                _logger.debug("Config %s: section %s: skip", path, section)
    return config


def load_config(host: str, *extra_paths: Path) -> BootstrapConfig:
    raw = _read_config(
        host,
        Path(__file__).with_name('config.ini'),
        Path('~/.config/user_bootstrap.ini').expanduser(),
        *extra_paths,
        )
    identity_file = raw.get('identity_file', '').strip()
    return BootstrapConfig(
        port=int(raw['port']),
        remote_user=raw['remote_user'],
        identity_file=Path(identity_file).expanduser() if identity_file else None,
        known_hosts=Path(raw['known_hosts']).expanduser(),
        saved_host_keys=Path(raw['saved_host_keys']).expanduser(),
        remote_python=raw['remote_python'],
        connect_timeout_sec=float(raw['connect_timeout_sec']),
        run_timeout_sec=float(raw['run_timeout_sec']),
        key_sources=[s.strip() for s in raw['key_sources'].splitlines() if s.strip()],
        )
