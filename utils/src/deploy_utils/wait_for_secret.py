import asyncio
import base64
import concurrent.futures
import logging
import typing as t

import pulumi as p
import pydantic

from deploy_utils.k8s import KubernetesSecretAccessor
from deploy_utils.waiter import ConfigurationError, Waiter, WaitRequest

_IDENTITY_PROPS = ('secret_name', 'namespace')
_BACKOFF_PROPS = ('max_attempts', 'initial_delay', 'max_delay')
_RESULT_PROPS = ('secret_data', 'attempts_required', 'elapsed_seconds')


def _wait_request(props: dict[str, t.Any]) -> WaitRequest:
    backoff = {key: props[key] for key in _BACKOFF_PROPS if props.get(key) is not None}
    return WaitRequest(
        target_name=props['secret_name'],
        target_namespace=props['namespace'],
        **backoff,
    )


def _run(coro: t.Coroutine[t.Any, t.Any, t.Any]) -> t.Any:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    # Called from within a running loop, poll on a separate one
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as executor:
        return executor.submit(asyncio.run, coro).result()


class WaitForSecretProvider(p.dynamic.ResourceProvider):
    """
    Polls for a Kubernetes Secret that is created asynchronously by a controller,
    e.g. the credentials Secret of an ObjectBucketClaim.
    """

    def check(self, _olds: dict[str, t.Any], news: dict[str, t.Any]) -> p.dynamic.CheckResult:
        """
        Reject invalid backoff bounds before anything talks to the cluster.
        """
        failures = []
        try:
            _wait_request(news).validate_bounds()
        except pydantic.ValidationError as e:
            failures = [
                p.dynamic.CheckFailure(str(error['loc'][0]).replace('-', '_'), error['msg'])
                for error in e.errors()
            ]
        except ConfigurationError as e:
            failures = [p.dynamic.CheckFailure(e.field, str(e))]
        return p.dynamic.CheckResult(news, failures)

    def create(self, props: dict[str, t.Any]) -> p.dynamic.CreateResult:
        """
        Wait for the Secret and expose its data.
        """
        # Provider processes start without logging setup, waiter progress goes to stderr
        logging.basicConfig(level=logging.INFO, format='[%(name)s] %(message)s')

        request = _wait_request(props)
        with KubernetesSecretAccessor.from_kubeconfig(props['kubeconfig']) as accessor:
            result = _run(Waiter(accessor).wait(request))

        return p.dynamic.CreateResult(
            id_=request.target,
            outs={
                **props,
                'secret_data': result.resolved_fields,
                'attempts_required': result.attempts_used,
                'elapsed_seconds': round(result.elapsed, 1),
            },
        )

    def diff(
        self,
        _id: str,
        _olds: dict[str, t.Any],
        _news: dict[str, t.Any],
    ) -> p.dynamic.DiffResult:
        """
        Only a different Secret requires waiting again.
        """
        replaces = [key for key in _IDENTITY_PROPS if _olds.get(key) != _news.get(key)]
        changed = [
            key for key in ('kubeconfig', *_BACKOFF_PROPS) if _olds.get(key) != _news.get(key)
        ]
        return p.dynamic.DiffResult(
            changes=bool(replaces or changed),
            replaces=replaces,
            delete_before_replace=False,
        )

    def update(
        self,
        _id: str,
        _olds: dict[str, t.Any],
        _news: dict[str, t.Any],
    ) -> p.dynamic.UpdateResult:
        """
        Record the new inputs, keeping the data resolved on create.
        """
        return p.dynamic.UpdateResult(
            outs={**_news, **{key: _olds.get(key) for key in _RESULT_PROPS}},
        )


class WaitForSecret(p.dynamic.Resource):
    """
    Blocks dependents until a Secret exists, then exposes its data.

    Add the resource whose controller creates the Secret to ``depends_on``.
    Values in ``secret_data`` are base64 encoded, use :meth:`value` for a
    decoded one.
    """

    secret_data: p.Output[dict[str, str]]
    secret_name: p.Output[str]
    namespace: p.Output[str]
    attempts_required: p.Output[int]
    elapsed_seconds: p.Output[float]

    def __init__(
        self,
        name: str,
        secret_name: p.Input[str],
        namespace: p.Input[str],
        kubeconfig: p.Input[str],
        max_attempts: p.Input[int | None] = None,
        initial_delay: p.Input[float | None] = None,
        max_delay: p.Input[float | None] = None,
        opts: p.ResourceOptions | None = None,
    ):
        super().__init__(
            WaitForSecretProvider(),
            name,
            {
                'secret_name': secret_name,
                'namespace': namespace,
                'kubeconfig': kubeconfig,
                'max_attempts': max_attempts,
                'initial_delay': initial_delay,
                'max_delay': max_delay,
                'secret_data': None,
                'attempts_required': None,
                'elapsed_seconds': None,
            },
            p.ResourceOptions.merge(
                opts,
                p.ResourceOptions(additional_secret_outputs=['secret_data', 'kubeconfig']),
            ),
        )

    def value(self, key: str) -> p.Output[str]:
        return p.Output.secret(
            self.secret_data.apply(lambda data: base64.b64decode(data[key]).decode())
        )
