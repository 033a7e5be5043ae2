import pytest

from cloudsync.core.errors import OperationError, TransientIOError
from cloudsync.core.retry import RetryController
from cloudsync.sync.tree import NodeKind, TreeNode


class _FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


def test_gives_up_after_retries_plus_one_attempts():
    clock = _FakeClock()
    retry = RetryController(retries=3, wait_retry=10, sleep=clock.sleep, clock=clock)
    attempts = []

    def failing():
        attempts.append(1)
        raise TransientIOError("connection reset")

    node = TreeNode.root().add_child(TreeNode("a.txt", NodeKind.FILE))
    with pytest.raises(OperationError, match="Unexpected error during remote upload of file 'a.txt'") as exc:
        retry.run("remote upload", failing, node)

    assert len(attempts) == 4
    assert isinstance(exc.value.__cause__, TransientIOError)
    # the first retry does not wait, later ones keep the interval
    assert clock.sleeps == [10, 10]


def test_recovers_after_transient_failures():
    clock = _FakeClock()
    retry = RetryController(retries=2, wait_retry=5, sleep=clock.sleep, clock=clock)
    results = iter([TransientIOError("timeout"), "ok"])

    def flaky():
        value = next(results)
        if isinstance(value, Exception):
            raise value
        return value

    assert retry.run("remote listing", flaky) == "ok"


def test_wait_is_shared_between_calls():
    clock = _FakeClock()
    retry = RetryController(retries=1, wait_retry=10, sleep=clock.sleep, clock=clock)

    retry.validate("remote update", None, TransientIOError("x"), 0)
    clock.now += 4
    retry.validate("remote remove", None, TransientIOError("y"), 0)

    assert clock.sleeps == [6]


def test_other_errors_are_not_retried():
    retry = RetryController(retries=5, wait_retry=0)
    calls = []

    def broken():
        calls.append(1)
        raise OperationError("permission denied")

    with pytest.raises(OperationError, match="permission denied"):
        retry.run("remote update", broken)
    assert len(calls) == 1


def test_probe_polls_until_found():
    clock = _FakeClock()
    retry = RetryController(probe_attempts=4, probe_interval=2, sleep=clock.sleep, clock=clock)
    answers = iter([None, None, "remote-id"])

    assert retry.probe(lambda: next(answers)) == "remote-id"
    assert clock.sleeps == [2, 2]


def test_probe_gives_up():
    clock = _FakeClock()
    retry = RetryController(probe_attempts=3, probe_interval=1, sleep=clock.sleep, clock=clock)
    assert retry.probe(lambda: None) is None
    assert clock.sleeps == [1, 1]
