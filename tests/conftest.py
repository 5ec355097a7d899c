from collections.abc import Iterator

import pytest
import structlog


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    # CLI tests point structlog at a stream that CliRunner closes afterwards.
    yield
    structlog.reset_defaults()
