# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import tempfile
import unittest
from pathlib import Path

from user_bootstrap import remote_routine
from user_bootstrap.bootstrap import MissingHost
from user_bootstrap.bootstrap import MissingUsername
from user_bootstrap.bootstrap import RemoteFailed
from user_bootstrap.bootstrap import bootstrap_user
from user_bootstrap.remote_routine import BootstrapRequest
from user_bootstrap.tests._fake_host import FakeHost
from user_bootstrap.tests._fake_host import FakeSession


class TestBootstrapUser(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.host = FakeHost(self._tmp.name)
        self.sshd_config = self.host.path('/etc/ssh/sshd_config')
        self.sshd_config.parent.mkdir(parents=True)
        self.sshd_config.write_text(
            'Include /etc/ssh/sshd_config.d/*.conf\n'
            '#AuthorizedKeysFile .ssh/authorized_keys .ssh/authorized_keys2\n'
            'AuthorizedKeysFile .ssh/authorized_keys\n'
            'Subsystem sftp /usr/lib/openssh/sftp-server\n')
        self.session = FakeSession(self.host)

    def _snapshot(self):
        root = Path(self._tmp.name)
        return {
            str(p.relative_to(root)): p.read_text()
            for p in sorted(root.rglob('*')) if p.is_file()}

    def test_three_runs(self):
        keys = 'keyA\nkeyB\n'
        first = bootstrap_user(self.session, 'H', 'alice', keys)
        self.assertEqual(first.account, 'created')
        self.assertEqual(self.host.read('/home/alice/.ssh/authorized_keys'), 'keyA\nkeyB\n')
        self.assertEqual(self.host.groups['sudo'], ['alice'])

        snapshot = self._snapshot()
        commands_before = list(self.host.commands)
        second = bootstrap_user(self.session, 'H', 'alice', keys)
        self.assertFalse(second.reconciled)
        self.assertEqual(self._snapshot(), snapshot)
        self.assertEqual(self.host.commands, commands_before)

        keys += 'keyC\n'
        third = bootstrap_user(self.session, 'H', 'alice', keys, override=True, align=True)
        self.assertEqual(third.account, 'present')
        self.assertEqual(third.added, {
            '/etc/ssh/authorized_keys.d/alice': 3,
            '/home/alice/.ssh/authorized_keys': 1,
            })
        self.assertEqual(third.restarted_service, 'ssh')
        self.assertFalse(third.degraded)
        self.assertEqual(self.host.read('/home/alice/.ssh/authorized_keys'), 'keyA\nkeyB\nkeyC\n')
        self.assertEqual(self.host.read('/etc/ssh/authorized_keys.d/alice'), 'keyA\nkeyB\nkeyC\n')
        directives = [
            line for line in self.sshd_config.read_text().splitlines()
            if line.startswith('AuthorizedKeysFile')]
        self.assertEqual(
            directives,
            ['AuthorizedKeysFile .ssh/authorized_keys /etc/ssh/authorized_keys.d/%u'])
        self.assertEqual(len([c for c in self.host.commands if c[0] == 'useradd']), 1)
        self.assertEqual(len(self.session.runs), 3)

    def test_routine_shipped_as_source(self):
        bootstrap_user(self.session, 'H', 'alice', 'keyA')
        [[python, flag, source]] = self.session.runs
        self.assertEqual((python, flag), ('python3', '-c'))
        self.assertEqual(source, Path(remote_routine.__file__).read_text())

    def test_degraded_restart_still_succeeds(self):
        host = FakeHost(self._tmp.name, services=())
        report = bootstrap_user(FakeSession(host), 'H', 'alice', 'keyA', align=True)
        self.assertTrue(report.degraded)
        self.assertIsNone(report.restarted_service)
        self.assertIn('AuthorizedKeysFile', self.sshd_config.read_text())

    def test_remote_store_merged(self):
        store = self.host.path('/etc/ssh/authorized_keys.d/alice')
        store.parent.mkdir(parents=True)
        store.write_text('keyR\n')
        bootstrap_user(self.session, 'H', 'alice', 'keyA', include_remote_store=True)
        self.assertEqual(self.host.read('/home/alice/.ssh/authorized_keys'), 'keyA\nkeyR\n')

    def test_remote_store_missing(self):
        with self.assertRaises(RemoteFailed) as ctx:
            bootstrap_user(self.session, 'H', 'alice', 'keyA', include_remote_store=True)
        self.assertEqual(ctx.exception.exit_code, 6)
        self.assertIn(b'Missing keys file', ctx.exception.stderr_tail)
        self.assertIn('Missing keys file', str(ctx.exception))
        # Account creation is not rolled back; the next run is safe.
        self.assertIn('alice', self.host.accounts)

    def test_remote_store_created_by_align(self):
        bootstrap_user(
            self.session, 'H', 'alice', 'keyA', align=True, include_remote_store=True)
        self.assertEqual(self.host.read('/home/alice/.ssh/authorized_keys'), 'keyA\n')

    def test_nonstandard_account_exit_code(self):
        self.host.add_account('svc', home='/srv/svc')
        with self.assertRaises(RemoteFailed) as ctx:
            bootstrap_user(self.session, 'H', 'svc', 'keyA', override=True)
        self.assertEqual(ctx.exception.exit_code, 7)

    def test_bytes_outside_utf8_end_to_end(self):
        self.host.add_account('alice')
        keys_file = self.host.path('/home/alice/.ssh/authorized_keys')
        keys_file.parent.mkdir()
        keys_file.write_bytes(b'ssh-rsa AAAA J\xf6rg\n')
        local_keys = b'ssh-rsa AAAA J\xf6rg\nssh-rsa BBBB Ren\xe9\n'.decode('utf8', errors='surrogateescape')
        report = bootstrap_user(self.session, 'H', 'alice', local_keys, override=True)
        self.assertEqual(report.added, {'/home/alice/.ssh/authorized_keys': 1})
        self.assertEqual(keys_file.read_bytes(), b'ssh-rsa AAAA J\xf6rg\nssh-rsa BBBB Ren\xe9\n')

    def test_missing_arguments(self):
        with self.assertRaises(MissingHost):
            bootstrap_user(self.session, '', 'alice', 'keyA')
        with self.assertRaises(MissingUsername):
            bootstrap_user(self.session, 'H', '', 'keyA')
        self.assertEqual(self.session.runs, [])


class TestBootstrapRequest(unittest.TestCase):

    def test_payload_carried_verbatim(self):
        keys = 'ssh-ed25519 AAAA "quoted" $HOME `x`\n\n\tkey with tab \n'
        request = BootstrapRequest('alice', keys, align=True)
        self.assertEqual(BootstrapRequest.from_json(request.to_json()), request)

    def test_empty_username_rejected(self):
        with self.assertRaises(ValueError):
            BootstrapRequest.from_json(b'{"username": "", "keys": "keyA"}')


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)7s %(name)s %(message).5000s",
        )
    unittest.main()
