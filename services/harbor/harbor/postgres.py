import pulumi as p
import pulumi_kubernetes as k8s

from harbor.config import ComponentConfig
from harbor.external_secrets import DATABASE_SECRET_NAME

POSTGRES_RELEASE_NAME = 'harbor-postgresql'
POSTGRES_PORT = 5432

# Harbor needs the notary databases next to the core registry database
INIT_DATABASES_SQL = """
CREATE DATABASE notary_server;
CREATE DATABASE notary_signer;

GRANT ALL PRIVILEGES ON DATABASE {database} TO {username};
GRANT ALL PRIVILEGES ON DATABASE notary_server TO {username};
GRANT ALL PRIVILEGES ON DATABASE notary_signer TO {username};
"""


def postgres_host(namespace: str) -> str:
    return f'{POSTGRES_RELEASE_NAME}.{namespace}.svc.cluster.local'


def create_postgres(
    component_config: ComponentConfig,
    namespace: p.Input[str],
    k8s_provider: k8s.Provider,
    depends_on: list[p.Resource],
    parent: p.Resource | None = None,
) -> k8s.helm.v3.Release:
    """
    Deploy the external Harbor database using the Bitnami Helm chart.

    Credentials are taken from the ESO managed database secret.
    """
    postgres_config = component_config.postgres

    return k8s.helm.v3.Release(
        POSTGRES_RELEASE_NAME,
        chart='postgresql',
        version=postgres_config.chart_version,
        namespace=namespace,
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo='https://charts.bitnami.com/bitnami',
        ),
        values={
            # Fixed name so the service name is predictable
            'fullnameOverride': POSTGRES_RELEASE_NAME,
            'auth': {
                'existingSecret': DATABASE_SECRET_NAME,
                'secretKeys': {
                    'adminPasswordKey': 'postgres-password',
                    'userPasswordKey': 'password',
                },
                'username': postgres_config.username,
                'database': postgres_config.database,
            },
            'primary': {
                'persistence': {
                    'enabled': True,
                    'storageClass': component_config.harbor.storage_class,
                    'size': postgres_config.storage_size,
                },
                'resources': {
                    'requests': {'memory': '512Mi', 'cpu': '500m'},
                    'limits': {'memory': '1Gi', 'cpu': '1000m'},
                },
                'initdb': {
                    'scripts': {
                        'init-harbor-databases.sql': INIT_DATABASES_SQL.format(
                            database=postgres_config.database,
                            username=postgres_config.username,
                        ),
                    },
                },
            },
            'metrics': {
                'enabled': True,
                'serviceMonitor': {'enabled': True},
            },
        },
        opts=p.ResourceOptions(
            provider=k8s_provider,
            parent=parent,
            depends_on=depends_on,
            custom_timeouts=p.CustomTimeouts(create='10m', update='10m', delete='10m'),
        ),
    )
