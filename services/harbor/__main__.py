"""Harbor container registry with Keycloak OIDC login"""

import pulumi as p
from deploy_utils.k8s import get_k8s_provider

from harbor.config import ComponentConfig
from harbor.harbor import Harbor
from harbor.keycloak import HarborOidc
from harbor.registry import configure_registry, get_admin_password

config = p.Config()
component_config = ComponentConfig.model_validate(config.get_object('config'))

kubeconfig = config.require_secret('kubeconfig')
k8s_provider = get_k8s_provider()

oidc = HarborOidc(
    'harbor',
    component_config=component_config,
    admin_password=config.require_secret('keycloak-admin-password'),
)

harbor = Harbor(
    'harbor',
    component_config=component_config,
    kubeconfig=kubeconfig,
    k8s_provider=k8s_provider,
)

admin_password = get_admin_password(component_config)
projects = configure_registry(component_config, harbor, oidc, admin_password)

p.log.info(f'Harbor will be available at {component_config.harbor.url}')

# Consumed by the permissions stack through a stack reference
p.export('harbor_url', harbor.url)
p.export('harbor_registry_url', component_config.harbor.hostname)
p.export('harbor_admin_password', admin_password)
p.export('bucket_attempts_required', harbor.bucket.credentials.attempts_required)
p.export('project_names', list(projects))
p.export('harbor_realm_id', oidc.realm.id)
p.export('harbor_realm_name', oidc.realm.realm)
p.export('oidc_client_id', oidc.client.client_id)
p.export('oidc_client_secret', oidc.client.client_secret)
