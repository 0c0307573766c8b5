import pytest

from chatcommerce.completion import Completion, CompletionRequest, RetryingCompletionClient
from chatcommerce.errors import FatalCompletionError, RetriesExhaustedError, TransientCompletionError

from conftest import FakeCompletionService


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _request():
    return CompletionRequest(messages=[])


@pytest.mark.asyncio
async def test_retries_transient_errors_then_succeeds():
    service = FakeCompletionService([TransientCompletionError("503"), Completion(text="ok", tokens_used=7)])
    sleep = RecordingSleep()
    client = RetryingCompletionClient(service, sleep=sleep)

    completion = await client.complete(_request())

    assert completion.text == "ok"
    assert len(service.requests) == 2
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_exhaustion_after_configured_attempts_with_escalating_delay():
    errors = [TransientCompletionError(f"timeout {n}") for n in range(3)]
    service = FakeCompletionService(errors)
    sleep = RecordingSleep()
    client = RetryingCompletionClient(service, max_attempts=3, base_delay=1.0, sleep=sleep)

    with pytest.raises(RetriesExhaustedError) as excinfo:
        await client.complete(_request())

    assert len(service.requests) == 3
    assert sleep.delays == [1.0, 2.0]
    assert excinfo.value.attempts == 3
    assert excinfo.value.last_error is errors[-1]
    assert excinfo.value.__cause__ is errors[-1]


@pytest.mark.asyncio
async def test_unclassified_errors_are_retried():
    service = FakeCompletionService([ConnectionError("reset"), Completion(text="ok")])
    client = RetryingCompletionClient(service, sleep=RecordingSleep())

    assert (await client.complete(_request())).text == "ok"


@pytest.mark.asyncio
async def test_fatal_error_is_not_retried():
    service = FakeCompletionService([FatalCompletionError("bad key", code="invalid_credentials")])
    sleep = RecordingSleep()
    client = RetryingCompletionClient(service, sleep=sleep)

    with pytest.raises(FatalCompletionError) as excinfo:
        await client.complete(_request())

    assert excinfo.value.code == "invalid_credentials"
    assert len(service.requests) == 1
    assert sleep.delays == []


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        RetryingCompletionClient(FakeCompletionService(), max_attempts=0)
