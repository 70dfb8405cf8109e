import pulumi as p
import pulumi_kubernetes as k8s

from harbor.config import ComponentConfig
from harbor.external_secrets import (
    ADMIN_PASSWORD_KEY,
    ADMIN_SECRET_NAME,
    DATABASE_SECRET_NAME,
    create_external_secrets,
)
from harbor.postgres import POSTGRES_PORT, create_postgres, postgres_host
from harbor.storage import RegistryBucket

# Chunk size used for S3 uploads and multipart copies
S3_CHUNK_SIZE = '5242880'


class Harbor(p.ComponentResource):
    """
    Harbor registry with its database, S3 blob storage and ESO managed credentials.
    """

    def __init__(
        self,
        name: str,
        component_config: ComponentConfig,
        kubeconfig: p.Input[str],
        k8s_provider: k8s.Provider,
        opts: p.ResourceOptions | None = None,
    ):
        super().__init__(f'lab:harbor:Harbor:{name}', name, None, opts)

        harbor_config = component_config.harbor
        bucket_config = component_config.bucket
        k8s_opts = p.ResourceOptions(provider=k8s_provider, parent=self)

        namespace = k8s.core.v1.Namespace(
            harbor_config.namespace,
            metadata={'name': harbor_config.namespace},
            opts=k8s_opts,
        )
        namespace_name = namespace.metadata.name

        self.secrets = create_external_secrets(
            namespace_name,
            component_config.vault,
            k8s_provider,
            parent=self,
        )

        self.bucket = RegistryBucket(
            bucket_config.claim_name,
            bucket_config=bucket_config,
            wait_config=component_config.wait,
            namespace=namespace_name,
            kubeconfig=kubeconfig,
            k8s_provider=k8s_provider,
            opts=p.ResourceOptions(parent=self),
        )

        self.postgresql = create_postgres(
            component_config,
            namespace_name,
            k8s_provider,
            depends_on=[namespace, self.secrets.database],
            parent=self,
        )

        timeout = str(harbor_config.request_timeout_seconds)
        self.chart = k8s.helm.v3.Release(
            'harbor',
            name='harbor',
            chart='harbor',
            version=harbor_config.chart_version,
            namespace=namespace_name,
            repository_opts=k8s.helm.v3.RepositoryOptsArgs(
                repo='https://helm.goharbor.io',
            ),
            values={
                'externalURL': harbor_config.url,
                'existingSecretAdminPassword': ADMIN_SECRET_NAME,
                'existingSecretAdminPasswordKey': ADMIN_PASSWORD_KEY,
                'global': {
                    # Used by redis, trivy and the job service
                    'storageClass': harbor_config.storage_class,
                },
                'persistence': {
                    'imageChartStorage': {
                        'type': 's3',
                        # Ceph RGW can't serve redirects to the clients
                        'disableredirect': True,
                        's3': {
                            # Ignored by Ceph RGW but required by Harbor
                            'region': bucket_config.region,
                            'bucket': bucket_config.bucket_name,
                            'accesskey': self.bucket.access_key,
                            'secretkey': self.bucket.secret_key,
                            'regionendpoint': bucket_config.endpoint,
                            'encrypt': False,
                            'secure': False,
                            'v4auth': True,
                            'chunksize': S3_CHUNK_SIZE,
                            'rootdirectory': '/registry',
                            'skipverify': True,
                            'multipartcopychunksize': S3_CHUNK_SIZE,
                            'multipartcopymaxconcurrency': 50,
                            'multipartcopythresholdsize': S3_CHUNK_SIZE,
                        },
                    },
                },
                'database': {
                    'type': 'external',
                    'external': {
                        'host': postgres_host(harbor_config.namespace),
                        'port': str(POSTGRES_PORT),
                        'username': component_config.postgres.username,
                        'existingSecret': DATABASE_SECRET_NAME,
                        'coreDatabase': component_config.postgres.database,
                        'notaryServerDatabase': 'notary_server',
                        'notarySignerDatabase': 'notary_signer',
                        'sslmode': 'disable',
                    },
                },
                'expose': {
                    'type': 'ingress',
                    'tls': {
                        'enabled': True,
                        'certSource': 'auto',
                        'auto': {'commonName': harbor_config.hostname},
                    },
                    'ingress': {
                        'hosts': {'core': harbor_config.hostname},
                        'annotations': {
                            'cert-manager.io/cluster-issuer': harbor_config.cluster_issuer,
                            'external-dns.alpha.kubernetes.io/hostname': f'{harbor_config.hostname}.',
                            'traefik.ingress.kubernetes.io/request-timeout': f'{timeout}s',
                            'nginx.ingress.kubernetes.io/proxy-read-timeout': timeout,
                            'nginx.ingress.kubernetes.io/proxy-send-timeout': timeout,
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
                parent=self,
                depends_on=[
                    namespace,
                    self.postgresql,
                    self.secrets.admin,
                    self.secrets.database,
                    self.bucket,
                ],
                custom_timeouts=p.CustomTimeouts(create='10m', update='10m', delete='10m'),
            ),
        )

        self.url = p.Output.from_input(harbor_config.url)

        self.register_outputs({'url': self.url})
