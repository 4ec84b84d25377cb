import threading
import time

import pytest

from leprechaun.cancellation import Cancelled, CancellationToken


def test_check_raises_once_cancelled():
    token = CancellationToken()
    token.check()
    token.cancel()
    assert token.cancelled
    with pytest.raises(Cancelled):
        token.check()


def test_sleep_wakes_up_on_cancel():
    token = CancellationToken()
    threading.Timer(0.05, token.cancel).start()

    start = time.time()
    with pytest.raises(Cancelled):
        token.sleep(10)
    assert time.time() - start < 2


def test_sleep_returns_normally_when_not_cancelled():
    token = CancellationToken()
    token.sleep(0.01)
    token.sleep(-1)


def test_wait_stopped():
    token = CancellationToken()
    assert not token.wait_stopped(0.01)
    token.mark_stopped()
    assert token.wait_stopped(0.01)
