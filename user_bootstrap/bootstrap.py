# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Bootstrap a user with SSH keys on a remote host.

Run from an operator machine, not as root:

    bootstrap-user rockpi.lan alice
    bootstrap-user rockpi.lan alice --override --align

The account is created once. Without --override an existing account
is left intact and the run succeeds doing nothing.
With --align, keys also go to /etc/ssh/authorized_keys.d/<user>
and sshd is configured to look there.
"""
import logging
import sys
from argparse import ArgumentParser
from pathlib import Path
from typing import Optional

from user_bootstrap import remote_routine
from user_bootstrap._config import load_config
from user_bootstrap._key_source import check_operator
from user_bootstrap._key_source import resolve_key_material
from user_bootstrap._logging import init_logging
from user_bootstrap._ssh import SshNotConnected
from user_bootstrap._ssh import SshSession
from user_bootstrap.remote_routine import BootstrapError
from user_bootstrap.remote_routine import BootstrapReport
from user_bootstrap.remote_routine import BootstrapRequest


class MissingHost(BootstrapError):
    exit_code = 2


class MissingUsername(BootstrapError):
    exit_code = 3


class RemoteFailed(Exception):

    def __init__(self, session, returncode, stderr_tail: Optional[bytes] = None):
        message = f"Remote bootstrap on {session} failed with exit status {returncode}"
        if stderr_tail:
            message += ":\n" + stderr_tail.decode(errors='backslashreplace')
        super().__init__(message)
        self.exit_code = returncode
        self.stderr_tail = stderr_tail


def check_target(host: str, username: str):
    if not host:
        raise MissingHost("Missing IP/host")
    if not username:
        raise MissingUsername("Missing username")


def _remote_routine_source() -> str:
    return Path(remote_routine.__file__).read_text()


def run_remote(session, request: BootstrapRequest, remote_python='python3', timeout_sec=600) -> BootstrapReport:
    """Ship the routine and the request in one round trip."""
    r = session.run(
        [remote_python, '-c', _remote_routine_source()],
        input=request.to_json(),
        timeout_sec=timeout_sec,
        )
    if r.returncode != 0:
        raise RemoteFailed(session, r.returncode, r.stderr)
    return BootstrapReport.from_json(r.stdout)


def bootstrap_user(session, host: str, username: str, keys: str, remote_python='python3', timeout_sec=600, **flags) -> BootstrapReport:
    check_target(host, username)
    request = BootstrapRequest(username=username, keys=keys, **flags)
    _logger.info(
        "Bootstrap %s on %s: align=%s, override=%s, include_remote_store=%s",
        username, host, request.align, request.override, request.include_remote_store)
    report = run_remote(session, request, remote_python, timeout_sec)
    if not report.reconciled:
        _logger.info("%s: user %s already exists; left untouched", host, username)
        return report
    for path, added in report.added.items():
        _logger.info("%s: %s: %d key line(s) added", host, path, added)
    if report.degraded:
        _logger.warning("%s: sshd configuration written but the service was not restarted", host)
    _logger.info("Done. Test: ssh %s@%s", username, host)
    return report


def _parse_args(args):
    parser = ArgumentParser(description="Create a user on a remote host and install SSH keys for it.")
    parser.add_argument('host', nargs='?', default='', help="target host name or address")
    parser.add_argument('username', nargs='?', default='', help="user to create on the target host")
    parser.add_argument('--override', action='store_true', help=(
        "reconcile keys even if the user already exists"))
    parser.add_argument('--align', action='store_true', help=(
        "also install keys to /etc/ssh/authorized_keys.d/<user>, "
        "point sshd AuthorizedKeysFile there and restart sshd"))
    parser.add_argument('--with-remote-store', action='store_true', help=(
        "also copy keys from /etc/ssh/authorized_keys.d/<user> on the target host; "
        "fail if it does not exist"))
    parser.add_argument('--identity', '-i', type=Path, help="private key to log in as root")
    parser.add_argument('--port', '-p', type=int, help="SSH port; default from config")
    parser.add_argument('--verbose', '-v', action='store_true')
    return parser.parse_args(args)


def main(args=None) -> int:
    parsed = _parse_args(sys.argv[1:] if args is None else args)
    init_logging(parsed.host or 'unknown', verbose=parsed.verbose)
    try:
        check_target(parsed.host, parsed.username)
        operator = check_operator()
        config = load_config(parsed.host)
        keys = resolve_key_material(operator, config.key_sources)
        identity_file: Optional[Path] = parsed.identity or config.identity_file
        session = SshSession(
            parsed.host,
            port=parsed.port or config.port,
            username=config.remote_user,
            identity_file=identity_file,
            known_hosts=config.known_hosts,
            saved_host_keys=config.saved_host_keys,
            connect_timeout_sec=config.connect_timeout_sec,
            )
        with session:
            bootstrap_user(
                session, parsed.host, parsed.username, keys,
                remote_python=config.remote_python,
                timeout_sec=config.run_timeout_sec,
                align=parsed.align,
                override=parsed.override,
                include_remote_store=parsed.with_remote_store,
                )
    except (BootstrapError, SshNotConnected, RemoteFailed) as e:
        _logger.error("%s", e)
        return e.exit_code
    return 0


_logger = logging.getLogger(__name__)
