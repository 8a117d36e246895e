# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Create a user on a remote host and give the operator SSH access to it.

Everything that changes the remote host happens in one SSH session
as root, in the self-contained remote_routine module.
The local side only finds the keys, connects and relays the outcome.

Every step must be idempotent.
The second run must not "accumulate" changes.
Running it multiple times must be safe; re-running is the way to recover
from an interrupted run.

Configuration must be as non-invasive as possible.
Existing accounts are not modified unless asked explicitly.
Existing authorized keys are never removed or reordered.
"""
from user_bootstrap._key_source import NoKeySource
from user_bootstrap._key_source import OperatorIsSuperuser
from user_bootstrap._key_source import resolve_key_material
from user_bootstrap._ssh import SshNotConnected
from user_bootstrap._ssh import SshSession
from user_bootstrap.bootstrap import MissingHost
from user_bootstrap.bootstrap import MissingUsername
from user_bootstrap.bootstrap import RemoteFailed
from user_bootstrap.bootstrap import bootstrap_user
from user_bootstrap.remote_routine import BootstrapError
from user_bootstrap.remote_routine import BootstrapReport
from user_bootstrap.remote_routine import BootstrapRequest

__all__ = [
    'BootstrapError',
    'BootstrapReport',
    'BootstrapRequest',
    'MissingHost',
    'MissingUsername',
    'NoKeySource',
    'OperatorIsSuperuser',
    'RemoteFailed',
    'SshNotConnected',
    'SshSession',
    'bootstrap_user',
    'resolve_key_material',
    ]
