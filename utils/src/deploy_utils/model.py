import pydantic


def _to_kebap_case(name: str) -> str:
    return name.replace('_', '-')


class LocalBaseModel(pydantic.BaseModel):
    model_config = {
        'extra': 'forbid',
        'alias_generator': _to_kebap_case,
        # Allow instanciation also with original names
        'populate_by_name': True,
    }


class WaitConfig(LocalBaseModel):
    """
    Backoff bounds for secret waiters, all optional so that the waiter defaults apply.

    Delays are given in seconds.
    """

    max_attempts: int | None = None
    initial_delay: float | None = None
    max_delay: float | None = None
