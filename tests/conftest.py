import pytest

from hubitat_exporter import FetchError


@pytest.fixture
def hub_down() -> FetchError:
    return FetchError("non-200 HTTP status: 500 Internal Server Error")
