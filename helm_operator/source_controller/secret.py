"""Module for resolving repository credentials."""

import logging

from helm_operator.exceptions import InputException, SecretResolutionError
from helm_operator.helm import RepositoryEntry
from helm_operator.manifest import (
    SECRET_KIND,
    HelmRepository,
    NamedResource,
    Secret,
    SecretReference,
)
from helm_operator.store import Store

_LOGGER = logging.getLogger(__name__)

USERNAME_KEY = "username"
PASSWORD_KEY = "password"
CA_KEY = "ca.crt"
CERT_KEY = "tls.crt"
KEY_KEY = "tls.key"


async def _get_secret(
    store: Store, ref: SecretReference, default_namespace: str | None
) -> Secret:
    secret_id = NamedResource(SECRET_KIND, ref.namespace or default_namespace, ref.name)
    try:
        secret = await store.get(secret_id, Secret)
    except ValueError as err:
        raise SecretResolutionError(str(secret_id), str(err)) from err
    if secret is None:
        raise SecretResolutionError(str(secret_id), "secret not found")
    return secret


def _get_value(secret: Secret, key: str) -> str | None:
    try:
        return secret.get_value(key)
    except InputException as err:
        raise SecretResolutionError(str(secret.resource_id), str(err)) from err


async def resolve_repository_entry(
    store: Store, repo: HelmRepository
) -> RepositoryEntry:
    """Return the engine registration for a repository with credentials inlined.

    Values found in a referenced secret take precedence over inline values.
    Raises SecretResolutionError when a referenced secret cannot be read.
    """
    entry = RepositoryEntry(
        name=repo.repo_name,
        url=repo.spec.url,
        oci=repo.is_oci,
        timeout=repo.timeout,
    )
    if not (auth := repo.spec.auth):
        return entry

    if basic := auth.basic:
        entry.username = basic.username
        entry.password = basic.password
        if basic.secret_ref:
            secret = await _get_secret(store, basic.secret_ref, repo.namespace)
            if username := _get_value(secret, USERNAME_KEY):
                entry.username = username
            if password := _get_value(secret, PASSWORD_KEY):
                entry.password = password

    if tls := auth.tls:
        entry.insecure_skip_tls_verify = tls.insecure_skip_verify
        entry.ca_file = tls.ca_file
        entry.cert_file = tls.cert_file
        entry.key_file = tls.key_file
        if tls.secret_ref:
            secret = await _get_secret(store, tls.secret_ref, repo.namespace)
            entry.ca_data = _get_value(secret, CA_KEY)
            entry.cert_data = _get_value(secret, CERT_KEY)
            entry.key_data = _get_value(secret, KEY_KEY)

    _LOGGER.debug(
        "Resolved credentials for %s (basic=%s, tls=%s)",
        repo.resource_id,
        entry.username is not None,
        auth.tls is not None,
    )
    return entry
