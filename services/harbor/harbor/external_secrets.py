"""
Credentials synced from Vault into Kubernetes by the External Secrets Operator.

Vault stays the single source of truth, ESO refreshes the Kubernetes copies
periodically.
"""

import typing as t

import pulumi as p
import pulumi_kubernetes as k8s

from harbor.config import VaultConfig

ADMIN_SECRET_NAME = 'harbor-admin-credentials'
ADMIN_PASSWORD_KEY = 'HARBOR_ADMIN_PASSWORD'
DATABASE_SECRET_NAME = 'harbor-database-credentials'


class ExternalSecrets(t.NamedTuple):
    admin: k8s.apiextensions.CustomResource
    database: k8s.apiextensions.CustomResource


def _external_secret(
    name: str,
    namespace: p.Input[str],
    data: list[dict[str, t.Any]],
    vault_config: VaultConfig,
    opts: p.ResourceOptions,
) -> k8s.apiextensions.CustomResource:
    return k8s.apiextensions.CustomResource(
        name,
        api_version='external-secrets.io/v1beta1',
        kind='ExternalSecret',
        metadata={
            'name': name,
            'namespace': namespace,
        },
        spec={
            'refreshInterval': vault_config.refresh_interval,
            'secretStoreRef': {
                'name': vault_config.secret_store,
                'kind': 'ClusterSecretStore',
            },
            'target': {
                'name': name,
                'creationPolicy': 'Owner',
            },
            'data': data,
        },
        opts=opts,
    )


def create_external_secrets(
    namespace: p.Input[str],
    vault_config: VaultConfig,
    k8s_provider: k8s.Provider,
    parent: p.Resource | None = None,
) -> ExternalSecrets:
    k8s_opts = p.ResourceOptions(provider=k8s_provider, parent=parent)

    admin = _external_secret(
        ADMIN_SECRET_NAME,
        namespace,
        [
            {
                'secretKey': ADMIN_PASSWORD_KEY,
                'remoteRef': {
                    'key': f'{vault_config.mount}/{vault_config.harbor_path}',
                    'property': 'adminPassword',
                },
            },
        ],
        vault_config,
        k8s_opts,
    )

    # The postgres chart reads the admin and the user password from the same secret
    database = _external_secret(
        DATABASE_SECRET_NAME,
        namespace,
        [
            {
                'secretKey': secret_key,
                'remoteRef': {
                    'key': f'{vault_config.mount}/{vault_config.database_path}',
                    'property': 'postgresPassword',
                },
            }
            for secret_key in ('postgres-password', 'password')
        ],
        vault_config,
        k8s_opts,
    )

    return ExternalSecrets(admin=admin, database=database)
