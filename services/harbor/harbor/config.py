import pydantic
import deploy_utils.model


class HarborConfig(deploy_utils.model.LocalBaseModel):
    hostname: str
    chart_version: str = '1.18.0'
    namespace: str = 'harbor'
    storage_class: str = 'ceph-replicated'
    cluster_issuer: str = 'zerossl-prod'
    # Large image pushes need long-running requests on the ingress
    request_timeout_seconds: int = 1800

    @property
    def url(self) -> str:
        return f'https://{self.hostname}'


class PostgresConfig(deploy_utils.model.LocalBaseModel):
    chart_version: str = '18.1.1'
    storage_size: str = '5Gi'
    username: str = 'harbor'
    database: str = 'registry'


class BucketConfig(deploy_utils.model.LocalBaseModel):
    claim_name: str = 'harbor-registry-bucket'
    bucket_name: str = 'harbor-registry'
    storage_class: str = 'ceph-s3-bucket'
    endpoint: str = 'http://rook-ceph-rgw-s3-objectstore.rook-ceph.svc:80'
    region: str = 'us-east-1'
    rgw_user: str = 'rgw-admin-ops-user'
    ceph_image: str = 'rook/ceph:v1.17.8'


class KeycloakConfig(deploy_utils.model.LocalBaseModel):
    url: str
    admin_user: str = 'admin'
    realm: str = 'Harbor'
    client_id: str = 'harbor'

    @property
    def realm_url(self) -> str:
        return f'{self.url.rstrip("/")}/realms/{self.realm}'


class VaultConfig(deploy_utils.model.LocalBaseModel):
    address: str
    mount: str = 'secret'
    harbor_path: str = 'harbor/prod'
    database_path: str = 'harbor-database/prod'
    secret_store: str = 'vault-backend'
    refresh_interval: str = '15m'


class ProjectConfig(deploy_utils.model.LocalBaseModel):
    name: str
    public: bool = False
    vulnerability_scanning: bool = True
    force_destroy: bool = False


class ProxyCacheConfig(deploy_utils.model.LocalBaseModel):
    project: str = 'proxy-cache'
    registry_name: str = 'docker_hub'
    endpoint_url: str = 'https://hub.docker.com'
    provider_name: str = 'docker-hub'


class ComponentConfig(deploy_utils.model.LocalBaseModel):
    harbor: HarborConfig
    postgres: PostgresConfig = pydantic.Field(default_factory=PostgresConfig)
    bucket: BucketConfig = pydantic.Field(default_factory=BucketConfig)
    keycloak: KeycloakConfig
    vault: VaultConfig
    wait: deploy_utils.model.WaitConfig = pydantic.Field(
        default_factory=deploy_utils.model.WaitConfig
    )
    projects: list[ProjectConfig] = []
    proxy_cache: ProxyCacheConfig | None = None
