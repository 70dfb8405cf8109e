import pulumi as p
import pulumi_keycloak as keycloak

from harbor.config import ComponentConfig


class HarborOidc(p.ComponentResource):
    """
    Keycloak realm and confidential OpenID client used by Harbor for OIDC login.

    Users, groups and their memberships are managed elsewhere, this only makes
    group memberships available in the tokens through a ``groups`` scope.
    """

    def __init__(
        self,
        name: str,
        component_config: ComponentConfig,
        admin_password: p.Input[str],
        opts: p.ResourceOptions | None = None,
    ):
        super().__init__(f'lab:harbor:HarborOidc:{name}', name, None, opts)

        keycloak_config = component_config.keycloak

        provider = keycloak.Provider(
            'keycloak',
            client_id='admin-cli',
            username=keycloak_config.admin_user,
            password=admin_password,
            url=keycloak_config.url,
            realm='master',
            opts=p.ResourceOptions(parent=self),
        )
        keycloak_opts = p.ResourceOptions(provider=provider, parent=self)

        self.realm = keycloak.Realm(
            keycloak_config.realm,
            realm=keycloak_config.realm,
            opts=keycloak_opts,
        )

        self.client = keycloak.openid.Client(
            keycloak_config.client_id,
            realm_id=self.realm.id,
            client_id=keycloak_config.client_id,
            name=keycloak_config.client_id,
            enabled=True,
            access_type='CONFIDENTIAL',
            standard_flow_enabled=True,
            direct_access_grants_enabled=True,
            valid_redirect_uris=[f'{component_config.harbor.url}/c/oidc/callback'],
            opts=keycloak_opts,
        )

        groups_scope = keycloak.openid.ClientScope(
            'groups',
            realm_id=self.realm.id,
            name='groups',
            include_in_token_scope=True,
            description='Groups the user is part of',
            opts=p.ResourceOptions.merge(keycloak_opts, p.ResourceOptions(depends_on=[self.client])),
        )

        keycloak.openid.GroupMembershipProtocolMapper(
            'groupmapper',
            realm_id=self.realm.id,
            client_scope_id=groups_scope.id,
            claim_name='groups',
            opts=p.ResourceOptions.merge(keycloak_opts, p.ResourceOptions(depends_on=[self.client])),
        )

        self.endpoint = keycloak_config.realm_url

        self.register_outputs(
            {
                'realm_id': self.realm.id,
                'client_id': self.client.client_id,
            }
        )
