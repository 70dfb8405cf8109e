import typing as t

import pulumi as p
import pulumi_kubernetes as k8s
import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException


def get_k8s_provider() -> k8s.Provider:
    return k8s.Provider(
        'k8s',
        kubeconfig=p.Config().require_secret('kubeconfig'),
        enable_server_side_apply=False,
    )


class KubernetesSecretAccessor:
    """
    Reads Secrets through the Kubernetes API.

    A missing Secret (HTTP 404) is reported as ``None``, every other API error
    is raised unchanged. Use as a context manager to close the API client's
    connection pool when done.
    """

    def __init__(self, core_v1_api: client.CoreV1Api):
        self._core_v1_api = core_v1_api

    @classmethod
    def from_kubeconfig(cls, kubeconfig: str) -> 'KubernetesSecretAccessor':
        api_client = config.new_client_from_config_dict(yaml.safe_load(kubeconfig))
        return cls(client.CoreV1Api(api_client))

    def __enter__(self) -> 'KubernetesSecretAccessor':
        return self

    def __exit__(self, *exc_info: t.Any) -> None:
        self.close()

    def close(self) -> None:
        self._core_v1_api.api_client.close()

    def lookup(self, name: str, namespace: str) -> dict[str, str] | None:
        try:
            secret = self._core_v1_api.read_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

        # Values stay base64 encoded as returned by the API server
        return dict(secret.data or {})
