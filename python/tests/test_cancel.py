import threading
import time

from emrunner.cancel import CancelToken


def test_token_is_set_once():
    token = CancelToken()
    assert not token.cancelled
    token.cancel()
    token.cancel()
    assert token.cancelled


def test_token_visible_across_threads():
    token = CancelToken()
    seen = []

    def poll():
        deadline = time.monotonic() + 5.0
        while not token.cancelled and time.monotonic() < deadline:
            time.sleep(0.01)
        seen.append(token.cancelled)

    worker = threading.Thread(target=poll)
    worker.start()
    token.cancel()
    worker.join(5.0)
    assert seen == [True]
