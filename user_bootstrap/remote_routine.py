# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Remote side of the bootstrap: account, authorized keys, SSH daemon.

This module is shipped verbatim to the target host and run there as
``python3 -c <source>``. The request comes as JSON on stdin,
the report goes as JSON to stdout, the log goes to stderr.
It must stay self-contained: standard library only, no package imports.

Every step is idempotent. An interrupted run is recovered by running again.
"""
import errno
import json
import logging
import os
import re
import shlex
import stat
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Callable
from typing import Iterable
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Sequence
from typing import TypeVar

_logger = logging.getLogger('user_bootstrap.remote')

HOME_BASE = '/home'
LOGIN_SHELL = '/bin/bash'
PRIVILEGE_GROUPS = ('sudo', 'wheel')
SSH_SERVICES = ('ssh', 'sshd')
SSHD_CONFIG = '/etc/ssh/sshd_config'
KEY_STORE_DIR = '/etc/ssh/authorized_keys.d'
AUTHORIZED_KEYS_FILE = '.ssh/authorized_keys'
AUTHORIZED_KEYS_DIRECTIVE = 'AuthorizedKeysFile'


class BootstrapError(Exception):
    exit_code = 1


class RemoteKeySourceMissing(BootstrapError):
    exit_code = 6


class UnexpectedAccount(BootstrapError):
    exit_code = 7


class AccountCreationFailed(BootstrapError):
    exit_code = 8


class UnsafeKeyPath(BootstrapError):
    exit_code = 9


class BootstrapRequest(NamedTuple):
    username: str
    keys: str
    align: bool = False
    override: bool = False
    include_remote_store: bool = False

    def to_json(self) -> bytes:
        return json.dumps(self._asdict()).encode('utf8')

    @classmethod
    def from_json(cls, data: bytes) -> 'BootstrapRequest':
        raw = json.loads(data.decode('utf8'))
        request = cls(
            username=raw['username'],
            keys=raw['keys'],
            align=bool(raw.get('align', False)),
            override=bool(raw.get('override', False)),
            include_remote_store=bool(raw.get('include_remote_store', False)),
            )
        if not request.username:
            raise ValueError("Empty username in request")
        return request


class BootstrapReport(NamedTuple):
    account: str  # "created" or "present"
    reconciled: bool
    added: Mapping[str, int]
    restarted_service: Optional[str] = None
    degraded: bool = False

    def to_json(self) -> bytes:
        return json.dumps(self._asdict()).encode('utf8')

    @classmethod
    def from_json(cls, data: bytes) -> 'BootstrapReport':
        return cls(**json.loads(data.decode('utf8')))


class Account(NamedTuple):
    name: str
    uid: int
    gid: int
    home: str
    shell: str


class Host:
    """Operations on the machine the routine runs on.

    File paths are absolute paths of the target system;
    they are resolved against ``root``, which is "/" in production.
    """

    def __init__(self, root='/'):
        self._root = Path(root)

    def __repr__(self):
        return f'{self.__class__.__name__}({str(self._root)!r})'

    def path(self, system_path: str) -> Path:
        return self._root / system_path.lstrip('/')

    def lookup_account(self, name: str) -> Optional[Account]:
        import pwd  # Not available on Windows operator machines.
        try:
            entry = pwd.getpwnam(name)
        except KeyError:
            return None
        return Account(entry.pw_name, entry.pw_uid, entry.pw_gid, entry.pw_dir, entry.pw_shell)

    def run(self, args: Sequence[str]) -> int:
        _logger.info("Run: %s", shlex.join(args))
        r = subprocess.run(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        if r.returncode != 0:
            _logger.info(
                "Exit status %d: %s",
                r.returncode, r.stderr.decode(errors='backslashreplace').strip())
        return r.returncode

    def chown(self, path: Path, uid: int, gid: int, fd: Optional[int] = None):
        if fd is not None:
            os.fchown(fd, uid, gid)
        else:
            os.chown(path, uid, gid, follow_symlinks=False)


_T = TypeVar('_T')


def first_available(candidates: Iterable[_T], probe: Callable[[_T], bool]) -> Optional[_T]:
    """Return the first candidate the probe accepts; None if none does.

    >>> first_available(['sudo', 'wheel'], lambda name: name == 'wheel')
    'wheel'
    >>> first_available(['sudo', 'wheel'], lambda name: False) is None
    True
    """
    for candidate in candidates:
        if probe(candidate):
            return candidate
    return None


def ensure_account(host: Host, request: BootstrapRequest) -> Optional[str]:
    """Create the account if absent.

    Return "created" or "present", or None if the routine must stop here:
    the account exists and the existing account must not be touched.
    """
    name = request.username
    account = host.lookup_account(name)
    if account is None:
        _logger.info("Create user %s", name)
        if host.run(['useradd', '-m', '-s', LOGIN_SHELL, name]) != 0:
            raise AccountCreationFailed(f"Cannot create user {name}")
        group = first_available(
            PRIVILEGE_GROUPS,
            lambda g: host.run(['getent', 'group', g]) == 0)
        if group is None:
            _logger.info("No %s group found; skip group membership", '/'.join(PRIVILEGE_GROUPS))
        else:
            _logger.info("Add %s to group %s", name, group)
            if host.run(['usermod', '-aG', group, name]) != 0:
                raise AccountCreationFailed(f"Cannot add {name} to group {group}")
        return 'created'
    if not request.override:
        _logger.info("User %s already exists; nothing to do without override", name)
        return None
    expected_home = f'{HOME_BASE}/{name}'
    if account.home.rstrip('/') != expected_home:
        raise UnexpectedAccount(
            f"User {name} has home {account.home!r}, expected {expected_home!r}; "
            "refuse to install keys into a non-standard account")
    _logger.info("User %s already exists; reconcile keys", name)
    return 'present'


def ensure_home(host: Host, account: Account):
    home = host.path(account.home)
    if home.is_dir():
        return
    _logger.info("Home %s is missing; recreate", account.home)
    home.mkdir(mode=0o750, parents=True)
    home.chmod(0o750)
    host.chown(home, account.uid, account.gid)


def _refuse_unless(is_kind: Callable[[int], bool], kind: str, path: Path, dir_fd: Optional[int] = None):
    """Refuse a path that exists but is not of the expected kind.

    Symlinks are never followed: the user owns the directories touched here.
    """
    try:
        st = os.stat(path.name if dir_fd is not None else path, dir_fd=dir_fd, follow_symlinks=False)
    except FileNotFoundError:
        return
    if not is_kind(st.st_mode):
        raise UnsafeKeyPath(f"{path} is not a {kind}; refuse to write through it")


def _open_no_follow(path: Path, flags: int, mode: int = 0o777, dir_fd: Optional[int] = None) -> int:
    try:
        return os.open(
            path.name if dir_fd is not None else path,
            flags | os.O_NOFOLLOW, mode, dir_fd=dir_fd)
    except OSError as e:
        if e.errno in (errno.ELOOP, errno.ENOTDIR, errno.ENXIO):
            raise UnsafeKeyPath(f"{path}: {e.strerror}; refuse to write through it")
        raise


def merge_key_lines(
        host: Host,
        path: Path,
        payload: str,
        uid: int,
        gid: int,
        mode: int = 0o600,
        dir_mode: int = 0o700,
        ) -> int:
    """Append payload lines absent from the file; return how many were added.

    Lines are compared as exact strings. Existing lines are never removed
    or reordered. Blank payload lines are skipped.
    Bytes that are not UTF-8 are kept as they are.
    """
    directory = path.parent
    _refuse_unless(stat.S_ISDIR, 'directory', directory)
    directory.mkdir(mode=dir_mode, parents=True, exist_ok=True)
    dir_fd = _open_no_follow(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fchmod(dir_fd, dir_mode)
        host.chown(directory, uid, gid, fd=dir_fd)
        _refuse_unless(stat.S_ISREG, 'regular file', path, dir_fd=dir_fd)
        fd = _open_no_follow(
            path, os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_NONBLOCK, mode, dir_fd=dir_fd)
    finally:
        os.close(dir_fd)
    with open(fd, 'rb+') as f:
        if not stat.S_ISREG(os.fstat(fd).st_mode):
            raise UnsafeKeyPath(f"{path} is not a regular file; refuse to write through it")
        content = f.read().decode('utf8', errors='surrogateescape')
        present = set(content.splitlines())
        missing = []
        for line in payload.splitlines():
            if not line.strip():
                continue
            if line in present:
                continue
            missing.append(line)
            present.add(line)
        if missing:
            text = ''.join(line + '\n' for line in missing)
            if content and not content.endswith('\n'):
                text = '\n' + text  # Otherwise, the first new key sticks to the last line.
            f.write(text.encode('utf8', errors='surrogateescape'))
            f.flush()
        host.chown(path, uid, gid, fd=fd)
        os.fchmod(fd, mode)
    added = len(missing)
    _logger.info("%s: %d key line(s) added", path, added)
    return added


def rewrite_directive(lines: Sequence[str], keyword: str, value: str) -> Sequence[str]:
    r"""Set a global sshd_config directive, replacing it in place.

    Only lines before the first Match block are global.
    Duplicates of the directive there are dropped.
    If absent, the directive goes right before the first Match block.

    >>> rewrite_directive(['Port 22\n', '#AuthorizedKeysFile x\n'], 'AuthorizedKeysFile', 'a b')
    ['Port 22\n', '#AuthorizedKeysFile x\n', 'AuthorizedKeysFile a b\n']
    >>> rewrite_directive(['authorizedkeysfile x\n', 'Match User u\n'], 'AuthorizedKeysFile', 'a')
    ['AuthorizedKeysFile a\n', 'Match User u\n']
    >>> rewrite_directive(['X 1\n', 'Match all\n', '  Y 2\n'], 'AuthorizedKeysFile', 'a')
    ['X 1\n', 'AuthorizedKeysFile a\n', 'Match all\n', '  Y 2\n']
    """
    directive_re = re.compile(rf'\s*{re.escape(keyword)}(\s|=|$)', re.IGNORECASE)
    match_re = re.compile(r'\s*Match(\s|$)', re.IGNORECASE)
    directive = f'{keyword} {value}\n'
    result = []
    replaced = False
    in_global = True
    for line in lines:
        if in_global and match_re.match(line):
            if not replaced:
                result.append(directive)
                replaced = True
            in_global = False
        if in_global and directive_re.match(line):
            if not replaced:
                result.append(directive)
                replaced = True
            continue
        result.append(line)
    if not replaced:
        if result and not result[-1].endswith('\n'):
            result[-1] += '\n'
        result.append(directive)
    return result


def align_sshd_config(host: Host, value: str) -> bool:
    """Write the authorized keys directive; return whether the file changed."""
    path = host.path(SSHD_CONFIG)
    old = path.read_text(encoding='utf8', errors='surrogateescape') if path.exists() else ''
    new = ''.join(rewrite_directive(old.splitlines(keepends=True), AUTHORIZED_KEYS_DIRECTIVE, value))
    if new == old:
        _logger.info("%s: %s is already set", SSHD_CONFIG, AUTHORIZED_KEYS_DIRECTIVE)
        return False
    mode = path.stat().st_mode & 0o7777 if path.exists() else 0o644
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix='.sshd_config.')
    try:
        with os.fdopen(fd, 'w', encoding='utf8', errors='surrogateescape') as f:
            f.write(new)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        os.unlink(tmp)
        raise
    _logger.info("%s: %s %s", SSHD_CONFIG, AUTHORIZED_KEYS_DIRECTIVE, value)
    return True


def restart_ssh_service(host: Host) -> Optional[str]:
    service = first_available(
        SSH_SERVICES,
        lambda s: host.run(['systemctl', 'restart', s]) == 0)
    if service is None:
        _logger.warning(
            "Cannot restart any of %s; configuration is written but not applied",
            ', '.join(SSH_SERVICES))
    else:
        _logger.info("Service %s restarted", service)
    return service


def execute(host: Host, request: BootstrapRequest) -> BootstrapReport:
    state = ensure_account(host, request)
    if state is None:
        return BootstrapReport(account='present', reconciled=False, added={})
    account = host.lookup_account(request.username)
    if account is None:
        raise AccountCreationFailed(f"User {request.username} is missing after creation")
    ensure_home(host, account)
    added = {}
    store = f'{KEY_STORE_DIR}/{account.name}'
    if request.align:
        added[store] = merge_key_lines(
            host, host.path(store), request.keys,
            uid=0, gid=0, mode=0o644, dir_mode=0o755)
    home_payload = request.keys
    if request.include_remote_store:
        store_path = host.path(store)
        if not store_path.is_file():
            raise RemoteKeySourceMissing(f"Missing keys file: {store}")
        home_payload += '\n' + store_path.read_text(encoding='utf8', errors='surrogateescape')
    home_file = f'{account.home.rstrip("/")}/{AUTHORIZED_KEYS_FILE}'
    added[home_file] = merge_key_lines(
        host, host.path(home_file), home_payload,
        uid=account.uid, gid=account.gid)
    restarted = None
    degraded = False
    if request.align:
        align_sshd_config(host, f'{AUTHORIZED_KEYS_FILE} {KEY_STORE_DIR}/%u')
        restarted = restart_ssh_service(host)
        degraded = restarted is None
    return BootstrapReport(state, True, added, restarted, degraded)


def serve(stdin, stdout, host: Host) -> int:
    try:
        request = BootstrapRequest.from_json(stdin.read())
        report = execute(host, request)
    except BootstrapError as e:
        _logger.error("%s", e)
        return e.exit_code
    stdout.write(report.to_json() + b'\n')
    stdout.flush()
    return 0


def main():
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format='[%(asctime)s] %(message)s',
        datefmt='%Y-%m-%dT%H:%M:%S%z',
        )
    if os.geteuid() != 0:
        _logger.error("Must run as root")
        return 1
    return serve(sys.stdin.buffer, sys.stdout.buffer, Host())


if __name__ == '__main__':
    sys.exit(main())
