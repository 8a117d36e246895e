# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import getpass
import logging
import os
from pathlib import Path
from typing import Sequence

from user_bootstrap.remote_routine import BootstrapError


class OperatorIsSuperuser(BootstrapError):
    exit_code = 4


class NoKeySource(BootstrapError):
    exit_code = 5


def check_operator():
    """Refuse to run as root: whose keys would be pushed is ambiguous then."""
    if os.name == 'posix' and os.geteuid() == 0:
        raise OperatorIsSuperuser("Run as a regular user, not as root")
    return getpass.getuser()


def key_source_candidates(operator: str, templates: Sequence[str]) -> Sequence[Path]:
    """Expand candidate templates for the operator.

    >>> [str(p) for p in key_source_candidates('bob', ['/etc/ssh/authorized_keys.d/{user}'])]
    ['/etc/ssh/authorized_keys.d/bob']
    """
    return [Path(t.format(user=operator)).expanduser() for t in templates]


def resolve_key_material(operator: str, templates: Sequence[str]) -> str:
    """Return raw content of the first existing candidate.

    Candidates are not merged. Content is not parsed.
    """
    candidates = key_source_candidates(operator, templates)
    for path in candidates:
        if path.is_file():
            text = path.read_text(encoding='utf8', errors='surrogateescape')
            _logger.info(
                "Keys of %s: %s: %d line(s)",
                operator, path, len([line for line in text.splitlines() if line.strip()]))
            return text
        _logger.debug("Keys of %s: %s: does not exist", operator, path)
    raise NoKeySource(
        "No public key found, tried: " + ', '.join(str(p) for p in candidates))


_logger = logging.getLogger(__name__)
