import pulumi as p
import pulumi_kubernetes as k8s
from deploy_utils.model import WaitConfig
from deploy_utils.wait_for_secret import WaitForSecret

from harbor.config import BucketConfig


class RegistryBucket(p.ComponentResource):
    """
    S3 bucket for the registry blobs, claimed from Rook/Ceph.

    The bucket provisioner creates a Secret with bucket specific credentials
    (named like the claim) some time after the claim is accepted. Consumers of
    ``access_key`` and ``secret_key`` are blocked until it exists.
    """

    def __init__(
        self,
        name: str,
        bucket_config: BucketConfig,
        wait_config: WaitConfig,
        namespace: p.Input[str],
        kubeconfig: p.Input[str],
        k8s_provider: k8s.Provider,
        opts: p.ResourceOptions | None = None,
    ):
        super().__init__(f'lab:harbor:RegistryBucket:{name}', name, None, opts)

        k8s_opts = p.ResourceOptions(provider=k8s_provider, parent=self)

        self.claim = k8s.apiextensions.CustomResource(
            bucket_config.claim_name,
            api_version='objectbucket.io/v1alpha1',
            kind='ObjectBucketClaim',
            metadata={
                'name': bucket_config.claim_name,
                'namespace': namespace,
            },
            spec={
                'bucketName': bucket_config.bucket_name,
                'storageClassName': bucket_config.storage_class,
            },
            opts=k8s_opts,
        )

        self.credentials = WaitForSecret(
            f'{name}-credentials',
            secret_name=bucket_config.claim_name,
            namespace=namespace,
            kubeconfig=kubeconfig,
            max_attempts=wait_config.max_attempts,
            initial_delay=wait_config.initial_delay,
            max_delay=wait_config.max_delay,
            opts=p.ResourceOptions(parent=self, depends_on=[self.claim]),
        )
        self.access_key = self.credentials.value('AWS_ACCESS_KEY_ID')
        self.secret_key = self.credentials.value('AWS_SECRET_ACCESS_KEY')

        # Give the RGW admin user access to the bucket. Linking a bucket twice
        # fails, which is fine for reruns.
        self.link_job = k8s.batch.v1.Job(
            f'link-{name}',
            metadata={
                'name': f'link-{name}',
                'namespace': 'rook-ceph',
            },
            spec={
                'template': {
                    'spec': {
                        'service_account_name': 'rook-ceph-system',
                        'containers': [
                            {
                                'name': 'link-bucket',
                                'image': bucket_config.ceph_image,
                                'command': ['/bin/bash', '-c'],
                                'args': [
                                    'kubectl exec -n rook-ceph deploy/rook-ceph-tools -- '
                                    f'radosgw-admin bucket link --bucket={bucket_config.bucket_name} '
                                    f'--uid={bucket_config.rgw_user} || '
                                    "echo 'Bucket already linked or has to be linked manually'"
                                ],
                            },
                        ],
                        'restart_policy': 'Never',
                    },
                },
                'backoff_limit': 1,
                'ttl_seconds_after_finished': 300,
            },
            opts=p.ResourceOptions.merge(
                k8s_opts,
                p.ResourceOptions(depends_on=[self.claim], delete_before_replace=True),
            ),
        )

        self.register_outputs(
            {
                'bucket_name': bucket_config.bucket_name,
                'attempts_required': self.credentials.attempts_required,
            }
        )
