import pytest

from ct2aria_core import DispatchConfig


@pytest.fixture
def fast_config():
    return DispatchConfig(
        concurrency=2,
        output_dir="/downloads",
        rate_limit=1000.0,
        poll_interval=0.01,
        backoff_initial=0.001,
        backoff_max=0.01,
        enqueue_poll_interval=0.01,
    )
