"""
Logging into the cluster with what is already there: a service account or a kubeconfig.

Only the static credentials are supported: no auth-providers, no exec plugins,
no token refreshing. This covers the in-cluster deployments and the development
against local clusters.

.. seealso::
    :mod:`credentials`.
"""
import logging
import os
from collections.abc import Iterable
from typing import Any

import yaml

from koncile._cogs.structs import credentials

logger = logging.getLogger(__name__)

# Mounted into every pod unless disabled for its service account.
SERVICE_ACCOUNT_DIR = '/var/run/secrets/kubernetes.io/serviceaccount'
IN_CLUSTER_SERVER = 'https://kubernetes.default.svc'
DEFAULT_KUBECONFIG = '~/.kube/config'


def login(
        connection: credentials.ConnectionInfo | None = None,
) -> credentials.ConnectionInfo:
    """
    Use the explicit credentials if given, else the service account, else the kubeconfig.
    """
    if connection is not None:
        return connection

    for source, fn in [('service account', login_with_service_account),
                       ('kubeconfig', login_with_kubeconfig)]:
        info = fn()
        if info is not None:
            logger.debug(f"Logged in with the {source}.")
            return info

    raise credentials.LoginError("Cannot login: neither in-cluster, nor via kubeconfig.")


def _read_stripped(path: str) -> str | None:
    if not os.path.exists(path):
        return None
    with open(path, encoding='utf-8') as f:
        return f.read().strip() or None


def login_with_service_account(**_: Any) -> credentials.ConnectionInfo | None:
    """ The pod's own credentials, if running in a cluster; ``None`` otherwise. """
    token_path = os.path.join(SERVICE_ACCOUNT_DIR, 'token')
    if not os.path.exists(token_path):
        return None

    ca_path = os.path.join(SERVICE_ACCOUNT_DIR, 'ca.crt')
    return credentials.ConnectionInfo(
        server=IN_CLUSTER_SERVER,
        ca_path=ca_path if os.path.exists(ca_path) else None,
        token=_read_stripped(token_path),
        default_namespace=_read_stripped(os.path.join(SERVICE_ACCOUNT_DIR, 'namespace')),
    )


def _first_by_name(entries: Iterable[dict[str, Any]], field: str, into: dict[str, Any]) -> None:
    for entry in entries:
        into.setdefault(entry['name'], entry.get(field) or {})


def login_with_kubeconfig(**_: Any) -> credentials.ConnectionInfo | None:
    """
    The credentials of the current context of ``$KUBECONFIG`` or ``~/.kube/config``.

    ``$KUBECONFIG`` can list several files; they are merged so that
    the first file to define a value wins, as kubectl does. A missing
    or broken file fails the login instead of being skipped.
    """
    kubeconfig = os.environ.get('KUBECONFIG')
    if not kubeconfig and os.path.exists(os.path.expanduser(DEFAULT_KUBECONFIG)):
        kubeconfig = DEFAULT_KUBECONFIG
    if not kubeconfig:
        return None

    current_context: str | None = None
    contexts: dict[str, Any] = {}
    clusters: dict[str, Any] = {}
    users: dict[str, Any] = {}
    for path in filter(None, (path.strip() for path in kubeconfig.split(os.pathsep))):
        with open(os.path.expanduser(path), encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
        current_context = current_context or config.get('current-context')
        _first_by_name(config.get('contexts', []), 'context', contexts)
        _first_by_name(config.get('clusters', []), 'cluster', clusters)
        _first_by_name(config.get('users', []), 'user', users)

    if current_context is None:
        raise credentials.LoginError('Current context is not set in kubeconfigs.')
    try:
        context = contexts[current_context]
        cluster = clusters[context['cluster']]
    except KeyError as e:
        raise credentials.LoginError(f'Kubeconfig is inconsistent: {e} is not found.') from e
    user = users.get(context.get('user'), {})

    return credentials.ConnectionInfo(
        server=cluster.get('server'),
        ca_path=cluster.get('certificate-authority'),
        ca_data=cluster.get('certificate-authority-data'),
        insecure=cluster.get('insecure-skip-tls-verify'),
        certificate_path=user.get('client-certificate'),
        certificate_data=user.get('client-certificate-data'),
        private_key_path=user.get('client-key'),
        private_key_data=user.get('client-key-data'),
        username=user.get('username'),
        password=user.get('password'),
        token=user.get('token'),
        default_namespace=context.get('namespace'),
    )
