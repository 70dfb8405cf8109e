import pulumi as p
import pulumi_vault as vault
import pulumiverse_harbor as harbor_provider

from harbor.config import ComponentConfig, ProjectConfig
from harbor.harbor import Harbor
from harbor.keycloak import HarborOidc

OIDC_SCOPES = 'openid,profile,email,offline_access'


def get_admin_password(component_config: ComponentConfig) -> p.Output[str]:
    """
    Read the Harbor admin password from Vault.

    The Helm chart consumes the ESO synced copy, the Harbor provider needs the
    value itself to configure the running instance.
    """
    vault_config = component_config.vault
    provider = vault.Provider('vault', address=vault_config.address)
    secret = vault.kv.get_secret_v2_output(
        mount=vault_config.mount,
        name=vault_config.harbor_path,
        opts=p.InvokeOptions(provider=provider),
    )
    return p.Output.secret(secret.data.apply(lambda data: data['adminPassword']))  # type: ignore


def _create_project(
    project: ProjectConfig,
    opts: p.ResourceOptions,
    registry_id: p.Input[int] | None = None,
) -> harbor_provider.Project:
    return harbor_provider.Project(
        project.name,
        name=project.name,
        public=project.public,
        vulnerability_scanning=project.vulnerability_scanning,
        force_destroy=project.force_destroy,
        registry_id=registry_id,
        opts=opts,
    )


def configure_registry(
    component_config: ComponentConfig,
    harbor: Harbor,
    oidc: HarborOidc,
    admin_password: p.Input[str],
) -> dict[str, harbor_provider.Project]:
    """
    Configure the running Harbor instance: OIDC login, projects and the proxy cache.

    Returns the created projects by name.
    """
    provider = harbor_provider.Provider(
        'harborprovider',
        url=component_config.harbor.url,
        username='admin',
        password=admin_password,
        opts=p.ResourceOptions(depends_on=[harbor, harbor.chart, harbor.secrets.admin]),
    )
    harbor_opts = p.ResourceOptions(provider=provider, depends_on=[harbor])

    harbor_provider.ConfigAuth(
        'configAuthResource',
        auth_mode='oidc_auth',
        primary_auth_mode=False,
        oidc_name='Keycloak',
        oidc_client_id=oidc.client.client_id,
        oidc_client_secret=oidc.client.client_secret,
        oidc_endpoint=oidc.endpoint,
        oidc_scope=OIDC_SCOPES,
        oidc_user_claim='preferred_username',
        oidc_auto_onboard=True,
        oidc_verify_cert=True,
        opts=p.ResourceOptions(
            provider=provider,
            depends_on=[harbor, harbor.chart, oidc.client],
        ),
    )

    projects = {
        project.name: _create_project(project, harbor_opts)
        for project in component_config.projects
    }

    if proxy_cache := component_config.proxy_cache:
        registry = harbor_provider.Registry(
            proxy_cache.provider_name,
            name=proxy_cache.registry_name,
            endpoint_url=proxy_cache.endpoint_url,
            provider_name=proxy_cache.provider_name,
            opts=harbor_opts,
        )
        projects[proxy_cache.project] = _create_project(
            ProjectConfig(name=proxy_cache.project, vulnerability_scanning=False),
            harbor_opts,
            registry_id=registry.registry_id,
        )

    return projects
